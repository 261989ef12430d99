"""
Control-Plane Messages

Design Decision: Message Format
===============================

Every control message is a JSON object with a `type` field plus a flat set
of payload fields:

```
{"type": "JOIN_ROOM", "roomId": "7F2K"}
{"type": "RTC_OFFER", "sdp": {...}}
```

The kinds form a closed set (`ControlMessageType`). Dispatchers on both
sides key a handler table by this enum and check it covers every kind, so a
new kind cannot be silently ignored.

The broker relays RTC_OFFER, RTC_ANSWER and ICE_CANDIDATE without looking
inside `sdp` / `candidate`; only the presence of the relayed field is part of
the envelope.
"""

import json
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping

from ..errors import ProtocolError


class ControlMessageType(Enum):
    """Control-plane message kinds."""
    # Room management
    CREATE_ROOM = "CREATE_ROOM"
    JOIN_ROOM = "JOIN_ROOM"
    ROOM_CREATED = "ROOM_CREATED"
    ROOM_JOINED = "ROOM_JOINED"
    PEER_JOINED = "PEER_JOINED"
    PEER_DISCONNECTED = "PEER_DISCONNECTED"
    ERROR = "ERROR"

    # Signaling (relayed, opaque)
    RTC_OFFER = "RTC_OFFER"
    RTC_ANSWER = "RTC_ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"


# Kinds an endpoint may send to the broker
ENDPOINT_TO_BROKER = frozenset({
    ControlMessageType.CREATE_ROOM,
    ControlMessageType.JOIN_ROOM,
    ControlMessageType.RTC_OFFER,
    ControlMessageType.RTC_ANSWER,
    ControlMessageType.ICE_CANDIDATE,
})

# Relayed kinds and the single opaque field each carries
RELAYED_FIELDS = {
    ControlMessageType.RTC_OFFER: 'sdp',
    ControlMessageType.RTC_ANSWER: 'sdp',
    ControlMessageType.ICE_CANDIDATE: 'candidate',
}

# Fields that must be present and non-empty strings
REQUIRED_STRING_FIELDS = {
    ControlMessageType.JOIN_ROOM: ('roomId',),
    ControlMessageType.ROOM_CREATED: ('roomId',),
    ControlMessageType.ROOM_JOINED: ('roomId',),
    ControlMessageType.PEER_JOINED: ('roomId',),
    ControlMessageType.PEER_DISCONNECTED: ('message',),
    ControlMessageType.ERROR: ('message',),
}


@dataclass
class ControlMessage:
    """A control-plane message."""
    type: ControlMessageType
    fields: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, **self.fields}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ControlMessage':
        """
        Validate an already-decoded message.

        Raises:
            ProtocolError: if the envelope is malformed or the kind unknown
        """
        if not isinstance(data, Mapping):
            raise ProtocolError(f"Control message must be an object, got {type(data).__name__}")

        raw_type = data.get('type')
        try:
            msg_type = ControlMessageType(raw_type)
        except ValueError:
            raise ProtocolError(f"Unknown control message type: {raw_type!r}")

        for name in REQUIRED_STRING_FIELDS.get(msg_type, ()):
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ProtocolError(f"{msg_type.value} requires a non-empty '{name}'")

        relayed = RELAYED_FIELDS.get(msg_type)
        if relayed is not None and relayed not in data:
            raise ProtocolError(f"{msg_type.value} requires '{relayed}'")

        fields = {k: v for k, v in data.items() if k != 'type'}
        return cls(type=msg_type, fields=fields)

    @classmethod
    def from_json(cls, raw: str) -> 'ControlMessage':
        """Decode a text frame. Raises ProtocolError on anything malformed."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid JSON in control message: {e}")
        return cls.from_dict(data)


def make_message(msg_type: ControlMessageType, **fields) -> ControlMessage:
    """Build a message from keyword payload fields."""
    return ControlMessage(type=msg_type, fields=fields)


def check_handler_table(table: Mapping[ControlMessageType, Any],
                        kinds: Iterable[ControlMessageType] = ControlMessageType) -> None:
    """
    Raise if a dispatch table does not cover every message kind.

    Called once when a dispatcher is constructed.
    """
    missing = [k.value for k in kinds if k not in table]
    if missing:
        raise RuntimeError(f"Handler table missing kinds: {', '.join(missing)}")
