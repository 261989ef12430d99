import pytest

from fusionshare.transfer.chunker import (
    CHUNK_SIZE, FileChunker, assemble_chunks, decode_chunk, encode_chunk, read_file,
)


def test_default_chunk_size():
    assert CHUNK_SIZE == 16384


@pytest.mark.parametrize('size, count', [
    (0, 0),
    (1, 1),
    (16384, 1),
    (16385, 2),
    (40000, 3),
])
def test_chunk_count(size, count):
    assert FileChunker().get_chunk_count(size) == count


def test_last_chunk_is_short():
    data = bytes(range(256)) * 157  # 40192 bytes
    data = data[:40000]
    chunks = list(FileChunker().iter_chunks(data))
    assert [len(c) for _, c in chunks] == [16384, 16384, 7232]
    assert assemble_chunks(c for _, c in chunks) == data


def test_chunk_out_of_range():
    chunker = FileChunker(4)
    with pytest.raises(IndexError):
        chunker.get_chunk(b'abcdefgh', 2)
    with pytest.raises(IndexError):
        chunker.get_chunk(b'', 0)


def test_invalid_chunk_size():
    with pytest.raises(ValueError):
        FileChunker(0)


def test_chunk_encoding():
    payload = bytes(range(256))
    assert decode_chunk(encode_chunk(payload)) == payload
    with pytest.raises(ValueError):
        decode_chunk('not base64!')


async def test_read_file(tmp_path):
    path = tmp_path / 'data.bin'
    path.write_bytes(b'\x00\x01payload')
    assert await read_file(path) == b'\x00\x01payload'
