import pytest

from fusionshare.errors import RoomFull, RoomNotFound, SelfJoin
from fusionshare.signaling.rooms import (
    ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, RoomRegistry, generate_room_code,
)

from .conftest import SequenceCodes


def test_generated_codes_use_alphabet():
    for _ in range(200):
        code = generate_room_code()
        assert len(code) == ROOM_CODE_LENGTH
        assert all(c in ROOM_CODE_ALPHABET for c in code)


def test_alphabet_excludes_ambiguous_characters():
    for c in 'IO01':
        assert c not in ROOM_CODE_ALPHABET
    assert len(ROOM_CODE_ALPHABET) == 32


def test_create_registers_initiator():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    room = registry.create('a')
    assert room.code == '7F2K'
    assert room.initiator == 'a'
    assert room.joiner is None
    assert registry.room_of('a') is room
    assert '7F2K' in registry


def test_code_collision_is_retried():
    codes = SequenceCodes('AAAA', 'AAAA', 'BBBB')
    registry = RoomRegistry(codes)
    first = registry.create('a')
    second = registry.create('b')
    assert first.code == 'AAAA'
    assert second.code == 'BBBB'
    assert codes.calls == 3


def test_exhausted_code_space_raises():
    registry = RoomRegistry(SequenceCodes('AAAA'), max_code_attempts=5)
    registry.create('a')
    with pytest.raises(RuntimeError):
        registry.create('b')


def test_join_is_case_insensitive():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    registry.create('a')
    room = registry.join('7f2k', 'b')
    assert room.code == '7F2K'
    assert room.joiner == 'b'
    assert room.is_paired


def test_join_unknown_room():
    registry = RoomRegistry()
    with pytest.raises(RoomNotFound) as exc:
        registry.join('ZZZZ', 'b')
    assert exc.value.message == 'Room not found'


def test_join_full_room():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    registry.create('a')
    registry.join('7F2K', 'b')
    with pytest.raises(RoomFull) as exc:
        registry.join('7F2K', 'c')
    assert exc.value.message == 'Room is full'
    assert registry.get('7F2K').joiner == 'b'


def test_join_own_room():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    registry.create('a')
    with pytest.raises(SelfJoin):
        registry.join('7F2K', 'a')
    assert registry.get('7F2K').joiner is None


def test_initiator_leaving_deletes_room():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    registry.create('a')
    registry.join('7F2K', 'b')

    departure = registry.leave('a')
    assert departure.was_initiator
    assert departure.room_deleted
    assert departure.notify == 'b'
    assert '7F2K' not in registry
    assert registry.room_of('b') is None


def test_joiner_leaving_reopens_room():
    registry = RoomRegistry(SequenceCodes('7F2K'))
    registry.create('a')
    registry.join('7F2K', 'b')

    departure = registry.leave('b')
    assert not departure.was_initiator
    assert not departure.room_deleted
    assert departure.notify == 'a'
    room = registry.get('7F2K')
    assert room.joiner is None

    registry.join('7F2K', 'c')
    assert room.joiner == 'c'


def test_leave_without_room():
    registry = RoomRegistry()
    assert registry.leave('nobody') is None


def test_creating_twice_requires_leaving_first():
    registry = RoomRegistry(SequenceCodes('AAAA', 'BBBB'))
    registry.create('a')
    with pytest.raises(ValueError):
        registry.create('a')


def test_stats():
    registry = RoomRegistry(SequenceCodes('AAAA', 'BBBB'))
    registry.create('a')
    registry.create('b')
    registry.join('AAAA', 'c')
    assert registry.stats() == {'rooms': 2, 'paired_rooms': 1, 'members': 3}


def test_disposed_registry_refuses_work():
    registry = RoomRegistry()
    registry.create('a')
    registry.dispose()
    assert len(registry) == 0
    with pytest.raises(RuntimeError):
        registry.create('b')
