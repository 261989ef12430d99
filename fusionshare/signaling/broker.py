"""
Signaling Broker

Pairs two endpoints in a room and relays their handshake messages.

Concurrency: every handler performs all registry mutations before its first
await, so a message is fully applied to the registry before any other
message can be looked at. Sends are the only suspension points, and a send
that fails (peer already gone) is logged and ignored.

Connections are duck-typed: anything with an `async send_text(str)` method
and hashable identity works (FastAPI's WebSocket in production, fakes in
tests).
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .messages import (
    ControlMessage, ControlMessageType, ENDPOINT_TO_BROKER, RELAYED_FIELDS,
    make_message, check_handler_table,
)
from .rooms import RoomRegistry, Departure, ConnectionHandle
from ..errors import ProtocolError, RoomError

logger = logging.getLogger(__name__)

Handler = Callable[[ConnectionHandle, ControlMessage], Awaitable[None]]

HOST_DISCONNECTED = 'Host disconnected'
PEER_DISCONNECTED = 'Peer disconnected'


class SignalingBroker:
    """
    Drives a RoomRegistry from control messages.

    One broker owns one registry; brokers share nothing, so several can run
    side by side in one process.
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry if registry is not None else RoomRegistry()
        self._connections: Set[ConnectionHandle] = set()

        # Statistics
        self.messages_received = 0
        self.messages_relayed = 0
        self.messages_dropped = 0

        self._handlers: Dict[ControlMessageType, Handler] = {
            ControlMessageType.CREATE_ROOM: self._handle_create_room,
            ControlMessageType.JOIN_ROOM: self._handle_join_room,
            ControlMessageType.RTC_OFFER: self._handle_relay,
            ControlMessageType.RTC_ANSWER: self._handle_relay,
            ControlMessageType.ICE_CANDIDATE: self._handle_relay,
        }
        for kind in ControlMessageType:
            if kind not in ENDPOINT_TO_BROKER:
                self._handlers[kind] = self._handle_unexpected
        check_handler_table(self._handlers)

    # === Connection lifecycle ===

    def connect(self, connection: ConnectionHandle):
        """Start tracking a newly accepted connection."""
        self._connections.add(connection)
        logger.info(f"Client connected ({len(self._connections)} connected)")

    async def disconnect(self, connection: ConnectionHandle):
        """
        Forget a connection and apply room lifecycle rules.

        Initiator leaving deletes the room and tells the joiner; joiner
        leaving frees the slot and tells the initiator.
        """
        self._connections.discard(connection)
        departure = self.registry.leave(connection)
        logger.info(f"Client disconnected ({len(self._connections)} connected)")
        await self._announce_departure(departure)

    async def handle_text(self, connection: ConnectionHandle, raw: str):
        """Process one text frame from a connection to completion."""
        self.messages_received += 1
        try:
            message = ControlMessage.from_json(raw)
        except ProtocolError as e:
            self.messages_dropped += 1
            logger.warning(f"Dropping control message: {e}")
            return

        logger.debug(f"Received: {message.type.value}")
        await self._handlers[message.type](connection, message)

    def drop_frame(self, reason: str):
        """Count and log a frame that never reached the JSON decoder."""
        self.messages_received += 1
        self.messages_dropped += 1
        logger.warning(f"Dropping control frame: {reason}")

    def close(self):
        """Dispose of the registry and forget all connections."""
        self.registry.dispose()
        self._connections.clear()

    # === Handlers ===

    async def _handle_create_room(self, connection: ConnectionHandle,
                                  message: ControlMessage):
        departure = self.registry.leave(connection)
        room = self.registry.create(connection)
        logger.info(f"Room created: {room.code}")

        await self._announce_departure(departure)
        await self._send(connection, make_message(
            ControlMessageType.ROOM_CREATED, roomId=room.code
        ))

    async def _handle_join_room(self, connection: ConnectionHandle,
                                message: ControlMessage):
        code = message.get('roomId')
        try:
            self.registry.check_join(code, connection)
        except RoomError as e:
            logger.info(f"Join {code!r} refused: {e.message}")
            await self._send(connection, make_message(
                ControlMessageType.ERROR, message=e.message
            ))
            return

        departure = self.registry.leave(connection)
        room = self.registry.join(code, connection)
        logger.info(f"Joiner paired in room: {room.code}")

        await self._announce_departure(departure)
        await self._send(connection, make_message(
            ControlMessageType.ROOM_JOINED, roomId=room.code
        ))
        await self._send(room.initiator, make_message(
            ControlMessageType.PEER_JOINED, roomId=room.code
        ))

    async def _handle_relay(self, connection: ConnectionHandle,
                            message: ControlMessage):
        kind = message.type
        room = self.registry.room_of(connection)
        if room is None:
            self.messages_dropped += 1
            logger.info(f"{kind.value}: connection not in a room, dropped")
            return

        peer = room.peer_of(connection)
        if peer is None:
            self.messages_dropped += 1
            logger.info(f"{kind.value}: no peer in room {room.code}, dropped")
            return

        # Forward the opaque field as-is
        field_name = RELAYED_FIELDS[kind]
        logger.debug(f"Relaying {kind.value} in room {room.code}")
        self.messages_relayed += 1
        await self._send(peer, ControlMessage(
            type=kind, fields={field_name: message.get(field_name)}
        ))

    async def _handle_unexpected(self, connection: ConnectionHandle,
                                 message: ControlMessage):
        self.messages_dropped += 1
        logger.warning(f"Dropping {message.type.value}: not accepted from endpoints")

    # === Helpers ===

    async def _announce_departure(self, departure: Optional[Departure]):
        if departure is None:
            return
        room = departure.room
        if departure.was_initiator:
            logger.info(f"Room deleted: {room.code} (initiator disconnected)")
            text = HOST_DISCONNECTED
        else:
            logger.info(f"Joiner left room: {room.code}")
            text = PEER_DISCONNECTED

        if departure.notify is not None:
            await self._send(departure.notify, make_message(
                ControlMessageType.PEER_DISCONNECTED, message=text
            ))

    async def _send(self, connection: ConnectionHandle, message: ControlMessage):
        """Best-effort send; the peer may already be gone."""
        try:
            await connection.send_text(message.to_json())
        except Exception as e:
            logger.debug(f"Send of {message.type.value} failed, ignoring: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get broker statistics."""
        return {
            **self.registry.stats(),
            'connections': len(self._connections),
            'messages_received': self.messages_received,
            'messages_relayed': self.messages_relayed,
            'messages_dropped': self.messages_dropped,
        }
