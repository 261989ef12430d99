import asyncio

import pytest

from fusionshare.errors import TransferError
from fusionshare.transfer.messages import (
    ChunkAck, DataMessageType, ResumeRequest,
)
from fusionshare.transfer.sender import TransferSender
from fusionshare.transfer.session import SenderState

from .conftest import Wire


def make_sender(wire=None, **kwargs):
    completed, errors = [], []
    sender = TransferSender(
        send=wire,
        on_complete=completed.append,
        on_error=errors.append,
        **kwargs,
    )
    return sender, completed, errors


def test_stop_and_wait_sequence():
    wire = Wire()
    sender, completed, _ = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)

    assert wire.frames[0].type == DataMessageType.FILE_META
    assert wire.frames[0].total_chunks == 3
    assert [c.index for c in wire.chunks()] == [0]
    assert sender.state == SenderState.AWAITING_ACK
    assert sender.in_flight == 0

    for index in range(3):
        # Nothing beyond the in-flight chunk goes out before its ack
        assert wire.chunks()[-1].index == index
        assert len(wire.chunks()) == index + 1
        sender.handle_ack(ChunkAck(file_id=session.file_id, index=index))

    assert sender.state == SenderState.COMPLETE
    assert sender.session is None
    assert completed == [session]
    assert [len(c.data) for c in wire.chunks()] == [21848, 21848, 9644]


def test_unmatched_acks_are_ignored():
    wire = Wire()
    sender, _, _ = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)

    sender.handle_ack(ChunkAck(file_id=session.file_id, index=1))
    sender.handle_ack(ChunkAck(file_id='other', index=0))
    assert session.cursor == 0
    assert len(wire.chunks()) == 1

    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))
    assert session.cursor == 1
    assert len(wire.chunks()) == 2


def test_acknowledged_payload_is_released():
    wire = Wire()
    sender, _, _ = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)
    assert list(session.chunk_buffer) == [0]
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))
    assert list(session.chunk_buffer) == [1]


def test_empty_file_completes_after_metadata():
    wire = Wire()
    sender, completed, _ = make_sender(wire)
    session = sender.start('empty.txt', b'')
    assert [m.type for m in wire.frames] == [DataMessageType.FILE_META]
    assert wire.frames[0].total_chunks == 0
    assert sender.state == SenderState.COMPLETE
    assert completed == [session]


def test_exact_chunk_boundary():
    wire = Wire()
    sender, completed, _ = make_sender(wire)
    session = sender.start('a.bin', b'y' * 16384)
    assert session.total_chunks == 1
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))
    assert completed == [session]


def test_busy_sender_refuses_second_file():
    sender, _, _ = make_sender(Wire())
    sender.start('a.bin', b'x' * 40000)
    with pytest.raises(TransferError):
        sender.start('b.bin', b'z')


def test_metadata_without_channel():
    sender, _, _ = make_sender(None)
    with pytest.raises(TransferError):
        sender.start('a.bin', b'x')
    assert sender.state == SenderState.IDLE
    assert sender.session is None


def test_resume_from_last_received():
    wire = Wire()
    sender, completed, _ = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))

    sender.channel_closed()
    assert sender.state == SenderState.PAUSED

    reopened = Wire()
    sender.attach(reopened)
    sender.handle_resume(ResumeRequest(file_id=session.file_id, last_received_chunk=1))
    assert [c.index for c in reopened.chunks()] == [2]
    assert session.cursor == 2
    assert 1 not in session.chunk_buffer

    sender.handle_ack(ChunkAck(file_id=session.file_id, index=2))
    assert completed == [session]


def test_resume_after_everything_received():
    wire = Wire()
    sender, completed, _ = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)
    sender.channel_closed()
    sender.attach(Wire())
    sender.handle_resume(ResumeRequest(file_id=session.file_id, last_received_chunk=2))
    assert completed == [session]


def test_failed_send_pauses_and_retry_resends_same_chunk():
    wire = Wire(fail_after=2)
    sender, _, errors = make_sender(wire)
    session = sender.start('a.bin', b'x' * 40000)
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))

    assert sender.state == SenderState.PAUSED
    assert session.cursor == 1
    assert len(errors) == 1
    assert isinstance(errors[0], TransferError)

    retry_wire = Wire()
    sender.attach(retry_wire)
    assert sender.retry()
    assert [c.index for c in retry_wire.chunks()] == [1]
    assert sender.state == SenderState.AWAITING_ACK


def test_retry_requires_pause():
    sender, _, _ = make_sender(Wire())
    assert not sender.retry()
    sender.start('a.bin', b'x' * 40000)
    assert not sender.retry()


async def test_ack_timeout_retransmits_then_pauses():
    wire = Wire()
    sender, _, errors = make_sender(wire, ack_timeout=0.01, max_retries=2)
    sender.start('a.bin', b'x' * 40000)

    await asyncio.sleep(0.3)
    assert [c.index for c in wire.chunks()] == [0, 0, 0]
    assert sender.retransmissions == 2
    assert sender.state == SenderState.PAUSED
    assert len(errors) == 1


async def test_ack_cancels_timer():
    wire = Wire()
    sender, completed, errors = make_sender(wire, ack_timeout=0.05)
    session = sender.start('a.bin', b'x' * 100)
    sender.handle_ack(ChunkAck(file_id=session.file_id, index=0))

    await asyncio.sleep(0.15)
    assert len(wire.chunks()) == 1
    assert completed == [session]
    assert errors == []


def test_cancel():
    sender, _, _ = make_sender(Wire())
    sender.start('a.bin', b'x' * 40000)
    sender.cancel()
    assert sender.state == SenderState.IDLE
    assert sender.session is None
    sender.start('b.bin', b'x')
