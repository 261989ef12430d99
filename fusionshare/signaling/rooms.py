"""
Room Registry

Design Decision: Room Codes
===========================

Options Considered:
| Length | Alphabet          | Space      | Notes                          |
|--------|-------------------|------------|--------------------------------|
| 4      | 32 unambiguous    | ~1M        | Easy to read out and type      |
| 6      | 32 unambiguous    | ~1B        | Safer, harder to type          |
| UUID   | hex               | huge       | Needs a link or QR to share    |

Decision: 4 characters from `ABCDEFGHJKLMNPQRSTUVWXYZ23456789`
- 0/O and 1/I/L are excluded so a code read off a screen is unambiguous
- Rooms are short-lived, so the live set stays tiny
- Codes are matched case-insensitively

The registry is plain data plus invariant checks. It performs no I/O;
the broker turns its results into notifications.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Optional

from ..errors import RoomNotFound, RoomFull, SelfJoin

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'
ROOM_CODE_LENGTH = 4

# Any hashable object identifying a live control connection
ConnectionHandle = Hashable


def generate_room_code() -> str:
    """Draw a random code from the room alphabet."""
    return ''.join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def normalize_room_code(code: str) -> str:
    return code.strip().upper()


@dataclass
class Room:
    """A two-slot pairing record."""
    code: str
    initiator: ConnectionHandle
    joiner: Optional[ConnectionHandle] = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_paired(self) -> bool:
        return self.joiner is not None

    def peer_of(self, connection: ConnectionHandle) -> Optional[ConnectionHandle]:
        """The other member of the room, if any."""
        if connection == self.initiator:
            return self.joiner
        if connection == self.joiner:
            return self.initiator
        return None


@dataclass
class Departure:
    """What happened to a room when one of its members left."""
    room: Room
    was_initiator: bool
    room_deleted: bool
    # Member who should be told about the departure
    notify: Optional[ConnectionHandle] = None


class RoomRegistry:
    """
    Owns the mapping from room code to room state.

    Invariants:
    - codes are unique among live rooms
    - a room has exactly one initiator and at most one joiner
    - a room without an initiator does not exist
    - a connection belongs to at most one room
    """

    def __init__(self, code_generator: Callable[[], str] = generate_room_code,
                 max_code_attempts: int = 1000):
        self._code_generator = code_generator
        self._max_code_attempts = max_code_attempts
        self._rooms: Dict[str, Room] = {}
        self._membership: Dict[ConnectionHandle, str] = {}
        self._disposed = False

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, code: str) -> bool:
        return normalize_room_code(code) in self._rooms

    def get(self, code: str) -> Optional[Room]:
        return self._rooms.get(normalize_room_code(code))

    def room_of(self, connection: ConnectionHandle) -> Optional[Room]:
        """The room a connection currently belongs to."""
        code = self._membership.get(connection)
        if code is None:
            return None
        return self._rooms.get(code)

    def _new_code(self) -> str:
        for _ in range(self._max_code_attempts):
            code = normalize_room_code(self._code_generator())
            if code not in self._rooms:
                return code
            logger.debug(f"Room code collision on {code}, retrying")
        raise RuntimeError("Could not allocate a free room code")

    def create(self, connection: ConnectionHandle) -> Room:
        """
        Create a room with `connection` as initiator.

        The caller must have released any previous membership first.
        """
        self._check_open()
        if connection in self._membership:
            raise ValueError("Connection already belongs to a room")

        room = Room(code=self._new_code(), initiator=connection)
        self._rooms[room.code] = room
        self._membership[connection] = room.code
        logger.debug(f"Registered room {room.code}")
        return room

    def check_join(self, code: str, connection: ConnectionHandle) -> Room:
        """
        Validate a join without changing state.

        Raises:
            RoomNotFound, RoomFull, SelfJoin
        """
        self._check_open()
        room = self.get(code)
        if room is None:
            raise RoomNotFound()
        if room.joiner is not None:
            raise RoomFull()
        if room.initiator == connection:
            raise SelfJoin()
        return room

    def join(self, code: str, connection: ConnectionHandle) -> Room:
        """Set the joiner slot of a room. Raises RoomError subclasses."""
        room = self.check_join(code, connection)
        if connection in self._membership:
            raise ValueError("Connection already belongs to a room")

        room.joiner = connection
        self._membership[connection] = room.code
        logger.debug(f"Room {room.code} paired")
        return room

    def leave(self, connection: ConnectionHandle) -> Optional[Departure]:
        """
        Remove a connection from its room.

        Initiator leaving deletes the room; joiner leaving clears the slot
        and the room reverts to waiting.
        """
        room = self.room_of(connection)
        self._membership.pop(connection, None)
        if room is None:
            return None

        if room.initiator == connection:
            del self._rooms[room.code]
            if room.joiner is not None:
                self._membership.pop(room.joiner, None)
            logger.debug(f"Room {room.code} deleted")
            return Departure(room=room, was_initiator=True, room_deleted=True,
                             notify=room.joiner)

        room.joiner = None
        return Departure(room=room, was_initiator=False, room_deleted=False,
                         notify=room.initiator)

    def stats(self) -> Dict[str, Any]:
        return {
            'rooms': len(self._rooms),
            'paired_rooms': sum(1 for r in self._rooms.values() if r.is_paired),
            'members': len(self._membership),
        }

    def dispose(self):
        """Drop every room. The registry cannot be used afterwards."""
        self._rooms.clear()
        self._membership.clear()
        self._disposed = True

    def _check_open(self):
        if self._disposed:
            raise RuntimeError("Room registry has been disposed")
