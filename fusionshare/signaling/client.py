"""
Signaling Client

Endpoint side of the control-plane connection: one websocket to the broker,
JSON text frames in both directions.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .messages import ControlMessage, ControlMessageType, make_message
from ..errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ControlMessage], Awaitable[None]]
CloseCallback = Callable[[Optional[Exception]], Awaitable[None]]


class SignalingClient:
    """
    Persistent control connection to the broker.

    Incoming messages are decoded and handed to `on_message` one at a time,
    in arrival order; the next frame is not read until the callback returns.
    Malformed frames are dropped with a warning.
    """

    def __init__(self, url: str):
        self.url = url
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self.on_message: Optional[MessageCallback] = None
        self.on_close: Optional[CloseCallback] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self):
        """Open the websocket and start reading."""
        if self._ws is not None:
            return
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.InvalidHandshake) as e:
            raise TransportError(f"Cannot reach broker at {self.url}: {e}") from e

        logger.info(f"Connected to broker at {self.url}")
        self._reader = asyncio.create_task(self._read_loop())

    async def send(self, msg_type: ControlMessageType, **fields):
        """
        Send a control message.

        Raises:
            TransportError: if the connection is closed
        """
        if self._ws is None:
            raise TransportError("Not connected to broker")
        message = make_message(msg_type, **fields)
        try:
            await self._ws.send(message.to_json())
        except ConnectionClosed as e:
            raise TransportError(f"Broker connection closed: {e}") from e
        logger.debug(f"Sent: {msg_type.value}")

    async def close(self):
        """Close the connection. The close callback is not invoked."""
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await ws.close()
            logger.info("Disconnected from broker")

    async def _read_loop(self):
        error: Optional[Exception] = None
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    logger.warning("Dropping binary control frame")
                    continue
                try:
                    message = ControlMessage.from_json(raw)
                except ProtocolError as e:
                    logger.warning(f"Dropping control message: {e}")
                    continue

                logger.debug(f"Received: {message.type.value}")
                if self.on_message:
                    await self.on_message(message)
        except ConnectionClosed as e:
            error = TransportError(f"Broker connection lost: {e}")

        # Reached only when the broker side went away
        self._ws = None
        self._reader = None
        logger.info("Broker connection closed")
        if self.on_close:
            await self.on_close(error)
