"""
Share Endpoint - Main Controller

Orchestrates everything one device needs to share files with one peer:
- Signaling client for the control connection to the broker
- A HandshakeCoordinator per pairing to open the direct channel
- A TransferManager that survives channel reopens

Room states:
```
IDLE -> CREATING -> WAITING_FOR_PEER -> PAIRED   (initiator)
IDLE -> JOINING  -> PAIRED                       (joiner)
```
Peer loss sends the initiator back to WAITING_FOR_PEER (the room still
exists) and the joiner back to IDLE (the room was deleted or the joiner
slot freed). Control connection loss sends everyone back to IDLE.

The wait_* helpers never outlive the pairing they wait on: waiting for a
file ends with a TransportError once the peer is gone, and waiting for the
channel ends once this endpoint no longer has a room.
"""

import asyncio
import logging
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set

from .collaborators import DirectoryDelivery, NullWakeLock, WakeLock, parse_join_url
from .config import Config
from .errors import ProtocolError, RoomError, RoomFull, RoomNotFound, SelfJoin, TransferError, TransportError
from .handshake import HandshakeCoordinator, HandshakeRole
from .signaling.client import SignalingClient
from .signaling.messages import ControlMessage, ControlMessageType, check_handler_table
from .transfer import TransferManager, TransferProgress, TransferSession
from .transfer.chunker import read_file
from .transfer.session import SenderState, new_file_id

logger = logging.getLogger(__name__)

ROOM_REPLY_TIMEOUT = 10.0

FRIENDLY_ERRORS = {
    RoomNotFound.message: "Room not found. Please check the code and try again.",
    RoomFull.message: "Room already has a connected device.",
}
DEFAULT_FRIENDLY_ERROR = "Something went wrong. Please try again."

_ROOM_ERRORS = {cls.message: cls for cls in (RoomNotFound, RoomFull, SelfJoin)}


def friendly_error(message: Optional[str]) -> str:
    """Text to show a user for a broker ERROR message."""
    return FRIENDLY_ERRORS.get(message, DEFAULT_FRIENDLY_ERROR)


def room_error_for(message: Optional[str]) -> RoomError:
    """Rebuild the broker-side RoomError from its ERROR text."""
    cls = _ROOM_ERRORS.get(message)
    if cls is None:
        return RoomError(message or DEFAULT_FRIENDLY_ERROR)
    return cls()


class RoomState(Enum):
    IDLE = "idle"
    CREATING = "creating"
    WAITING_FOR_PEER = "waiting_for_peer"
    JOINING = "joining"
    PAIRED = "paired"


class ShareEndpoint:
    """
    One device taking part in a share.

    Usage:
        endpoint = ShareEndpoint(config)
        code = await endpoint.create_room()       # or join_room(code)
        await endpoint.wait_for_channel()
        session = await endpoint.send_file(path)
        await endpoint.wait_sent(session.file_id)
    """

    def __init__(self, config: Config = None,
                 client: Optional[SignalingClient] = None,
                 delivery: Optional[DirectoryDelivery] = None,
                 wake_lock: Optional[WakeLock] = None,
                 peer_connection_factory: Optional[Callable] = None):
        """
        Args:
            config: endpoint configuration (defaults if not provided)
            client: control connection (built from config.broker_url if not provided)
            delivery: where received files go (config.download_dir by default)
            wake_lock: held while a transfer is active
            peer_connection_factory: passed to each HandshakeCoordinator
        """
        self.config = config or Config()
        self.client = client or SignalingClient(self.config.broker_url)
        self.client.on_message = self._on_control_message
        self.client.on_close = self._on_control_closed
        self.delivery = delivery or DirectoryDelivery(self.config.download_dir)
        self.wake_lock = wake_lock or NullWakeLock()
        self._pc_factory = peer_connection_factory

        self.room_state = RoomState.IDLE
        self.role: Optional[HandshakeRole] = None
        self.room_code: Optional[str] = None
        self.coordinator: Optional[HandshakeCoordinator] = None

        self.transfers = TransferManager(
            chunk_size=self.config.chunk_size,
            ack_timeout=self.config.ack_timeout,
            max_retries=self.config.max_send_retries,
            auto_resume=self.config.auto_resume,
            is_initiator=lambda: self.role == HandshakeRole.INITIATOR,
            on_progress=self._on_progress,
            on_sent=self._on_sent,
            on_received=self._on_received,
            on_error=self._on_transfer_error,
        )

        # Application callbacks
        self.on_room_state: Optional[Callable[[RoomState], None]] = None
        self.on_progress: Optional[Callable[[TransferProgress], None]] = None
        self.on_file_received: Optional[Callable[[Path, TransferSession], None]] = None
        self.on_peer_disconnected: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        self.received: asyncio.Queue = asyncio.Queue()
        self._channel_open = asyncio.Event()
        self._room_reply: Optional[asyncio.Future] = None
        self._sent: Dict[str, asyncio.Future] = {}
        self._stop_on_pause: Set[str] = set()
        self._deliveries = set()

        self._peer_lost = asyncio.Event()     # cleared per pairing
        self._room_closed = asyncio.Event()   # cleared per create/join
        self._lost_reason = DEFAULT_FRIENDLY_ERROR

        self._handlers = {
            ControlMessageType.ROOM_CREATED: self._handle_room_created,
            ControlMessageType.ROOM_JOINED: self._handle_room_joined,
            ControlMessageType.PEER_JOINED: self._handle_peer_joined,
            ControlMessageType.PEER_DISCONNECTED: self._handle_peer_disconnected,
            ControlMessageType.RTC_OFFER: self._handle_offer,
            ControlMessageType.RTC_ANSWER: self._handle_answer,
            ControlMessageType.ICE_CANDIDATE: self._handle_candidate,
            ControlMessageType.ERROR: self._handle_error,
            ControlMessageType.CREATE_ROOM: self._handle_unexpected,
            ControlMessageType.JOIN_ROOM: self._handle_unexpected,
        }
        check_handler_table(self._handlers)

        # Statistics
        self.pairings = 0
        self.files_delivered = 0

    @property
    def channel_open(self) -> bool:
        return self._channel_open.is_set()

    # === Room operations ===

    async def connect(self):
        """Open the control connection (done implicitly by create/join)."""
        await self.client.connect()

    async def create_room(self, timeout: float = ROOM_REPLY_TIMEOUT) -> str:
        """
        Create a room and return its code.

        Raises:
            TransportError: if the broker cannot be reached
            RoomError: if the broker refuses
        """
        await self.connect()
        await self._reset_room()
        self._room_closed.clear()
        self._set_room_state(RoomState.CREATING)
        return await self._request_room(ControlMessageType.CREATE_ROOM, timeout)

    async def join_room(self, code_or_url: str, timeout: float = ROOM_REPLY_TIMEOUT) -> str:
        """
        Join the room named by a code or join URL.

        Raises:
            RoomNotFound, RoomFull, SelfJoin: refused by the broker
            TransportError: if the broker cannot be reached
        """
        code = parse_join_url(code_or_url)
        if code is None:
            raise RoomNotFound()

        await self.connect()
        await self._reset_room()
        self._room_closed.clear()
        self._set_room_state(RoomState.JOINING)
        return await self._request_room(ControlMessageType.JOIN_ROOM, timeout, roomId=code)

    async def wait_for_channel(self, timeout: Optional[float] = None):
        """
        Block until the direct channel to the peer is open.

        An initiator keeps waiting through peers that leave early; the wait
        fails only when this endpoint loses its room.

        Raises:
            TransportError: the room is gone (joiner's host left, broker lost)
            asyncio.TimeoutError: on timeout
        """
        await self._wait_unless(self._channel_open.wait(), self._room_closed, timeout)

    async def wait_received(self, timeout: Optional[float] = None) -> Path:
        """
        Wait for the next delivered file and return where it was saved.

        Raises:
            TransportError: the peer went away before a file arrived
            asyncio.TimeoutError: on timeout
        """
        try:
            return await self._wait_unless(self.received.get(), self._peer_lost, timeout)
        except TransportError:
            # The file may have completed just before the peer left
            if self._deliveries:
                await asyncio.gather(*self._deliveries, return_exceptions=True)
            if not self.received.empty():
                return self.received.get_nowait()
            raise

    async def leave(self):
        """
        Leave the current room.

        The control connection is closed so the broker releases the room
        slot; the next create or join reconnects. In-flight sessions are
        discarded.
        """
        await self._teardown_peer()
        self.transfers.cancel()
        self._fail_pending(TransferError("Left the room"))
        await self.client.close()
        self.room_code = None
        self.role = None
        self._set_room_state(RoomState.IDLE)
        self._mark_lost("Left the room", room_closed=True)
        self._update_wake_lock()

    async def close(self):
        """Leave and wait for pending file deliveries."""
        await self.leave()
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        self.wake_lock.release()

    # === Transfers ===

    async def send_file(self, file_path: Path) -> TransferSession:
        """
        Start sending a file to the paired peer.

        Raises:
            FileNotFoundError: if the file doesn't exist
            TransportError: if the direct channel is not open
            TransferError: if a transfer is already active
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        if not self.channel_open:
            raise TransportError("Direct channel not open")

        data = await read_file(file_path)
        mime_type = mimetypes.guess_type(file_path.name)[0] or ''

        file_id = new_file_id()
        self._sent[file_id] = asyncio.get_running_loop().create_future()
        try:
            session = self.transfers.send_file(file_path.name, data, mime_type, file_id)
        except TransferError:
            self._sent.pop(file_id, None)
            raise
        self._update_wake_lock()
        return session

    async def wait_sent(self, file_id: str, timeout: Optional[float] = None,
                        stop_on_pause: bool = False) -> TransferSession:
        """
        Wait until the peer has acknowledged every chunk of `file_id`.

        Args:
            stop_on_pause: give up with the TransferError that paused the
                sender instead of waiting for a resume

        Raises:
            TransportError: the peer went away first
            TransferError: the transfer was dropped (or paused, see above)
        """
        future = self._sent.get(file_id)
        if future is None:
            raise KeyError(file_id)
        if stop_on_pause:
            self._stop_on_pause.add(file_id)
        try:
            return await self._wait_unless(asyncio.shield(future), self._peer_lost, timeout)
        finally:
            self._stop_on_pause.discard(file_id)
            if future.done():
                self._sent.pop(file_id, None)

    def resume(self) -> bool:
        """Manually resume a paused transfer."""
        return self.transfers.resume()

    # === Control messages ===

    async def _on_control_message(self, message: ControlMessage):
        handler = self._handlers[message.type]
        try:
            await handler(message)
        except ProtocolError as e:
            logger.warning(f"Dropping {message.type.value}: {e}")
        except TransportError as e:
            logger.warning(f"Control connection failed while handling {message.type.value}: {e}")

    async def _on_control_closed(self, error: Optional[Exception]):
        error = error or TransportError("Broker closed the connection")
        logger.warning(f"Lost control connection: {error}")
        await self._teardown_peer()
        self.room_code = None
        self.role = None
        self._set_room_state(RoomState.IDLE)
        self._resolve_room(error=error)
        self._mark_lost(DEFAULT_FRIENDLY_ERROR, room_closed=True)
        self._report(DEFAULT_FRIENDLY_ERROR)

    async def _handle_room_created(self, message: ControlMessage):
        if self.room_state != RoomState.CREATING:
            raise ProtocolError(f"ROOM_CREATED while {self.room_state.value}")
        self.room_code = message.get('roomId')
        self.role = HandshakeRole.INITIATOR
        self._set_room_state(RoomState.WAITING_FOR_PEER)
        logger.info(f"Room {self.room_code} created, waiting for peer")
        self._resolve_room(self.room_code)

    async def _handle_room_joined(self, message: ControlMessage):
        if self.room_state != RoomState.JOINING:
            raise ProtocolError(f"ROOM_JOINED while {self.room_state.value}")
        self.room_code = message.get('roomId')
        self.role = HandshakeRole.JOINER
        self._start_pairing()
        self._set_room_state(RoomState.PAIRED)
        logger.info(f"Joined room {self.room_code}, waiting for offer")
        self._resolve_room(self.room_code)

    async def _handle_peer_joined(self, message: ControlMessage):
        if self.room_state != RoomState.WAITING_FOR_PEER:
            raise ProtocolError(f"PEER_JOINED while {self.room_state.value}")
        coordinator = self._start_pairing()
        self._set_room_state(RoomState.PAIRED)
        logger.info(f"Peer joined room {self.room_code}")
        await coordinator.start()

    async def _handle_peer_disconnected(self, message: ControlMessage):
        text = message.get('message')
        logger.info(f"Peer left: {text}")
        await self._teardown_peer()

        if self.role == HandshakeRole.INITIATOR and self.room_code:
            self._set_room_state(RoomState.WAITING_FOR_PEER)
            self._mark_lost(text or DEFAULT_FRIENDLY_ERROR)
        else:
            self.room_code = None
            self.role = None
            self._set_room_state(RoomState.IDLE)
            self._mark_lost(text or DEFAULT_FRIENDLY_ERROR, room_closed=True)

        if self.on_peer_disconnected:
            self.on_peer_disconnected(text)

    async def _handle_offer(self, message: ControlMessage):
        if self.coordinator is None:
            raise ProtocolError("Offer received without a paired peer")
        await self.coordinator.handle_offer(message.get('sdp'))

    async def _handle_answer(self, message: ControlMessage):
        if self.coordinator is None:
            raise ProtocolError("Answer received without a paired peer")
        await self.coordinator.handle_answer(message.get('sdp'))

    async def _handle_candidate(self, message: ControlMessage):
        if self.coordinator is None:
            raise ProtocolError("ICE candidate received without a paired peer")
        await self.coordinator.handle_candidate(message.get('candidate'))

    async def _handle_error(self, message: ControlMessage):
        text = message.get('message')
        logger.warning(f"Broker error: {text}")
        if self.room_state in (RoomState.CREATING, RoomState.JOINING):
            self._set_room_state(RoomState.IDLE)
        self._resolve_room(error=room_error_for(text))
        self._report(friendly_error(text))

    async def _handle_unexpected(self, message: ControlMessage):
        raise ProtocolError(f"{message.type.value} is not sent by the broker")

    # === Direct channel ===

    def _start_pairing(self) -> HandshakeCoordinator:
        self.pairings += 1
        self._peer_lost.clear()
        self.coordinator = HandshakeCoordinator(
            role=self.role,
            send_signal=self.client.send,
            ice_servers=self.config.ice_servers,
            on_channel_open=self._on_channel_open,
            on_channel_message=self._on_channel_message,
            on_channel_close=self._on_channel_close,
            peer_connection_factory=self._pc_factory,
        )
        return self.coordinator

    def _on_channel_open(self, channel):
        logger.info("Direct channel open")
        self._channel_open.set()
        self.transfers.channel_opened(channel.send)
        self._update_wake_lock()

    def _on_channel_message(self, raw):
        self.transfers.handle_frame(raw)
        self._update_wake_lock()

    def _on_channel_close(self):
        logger.info("Direct channel closed")
        self._channel_open.clear()
        self.transfers.channel_closed()
        self._update_wake_lock()

    async def _teardown_peer(self):
        coordinator, self.coordinator = self.coordinator, None
        if coordinator is not None:
            await coordinator.close()
        self._channel_open.clear()
        self.transfers.channel_closed()

    # === Transfer callbacks ===

    def _on_progress(self, progress: TransferProgress):
        if self.on_progress:
            self.on_progress(progress)

    def _on_sent(self, session: TransferSession):
        future = self._sent.get(session.file_id)
        if future is not None and not future.done():
            future.set_result(session)
        self._update_wake_lock()

    def _on_received(self, session: TransferSession, data: bytes):
        task = asyncio.ensure_future(self._deliver(session, data))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        self._update_wake_lock()

    async def _deliver(self, session: TransferSession, data: bytes):
        try:
            path = await self.delivery.deliver(session.file_name, data)
        except OSError as e:
            logger.error(f"Could not save {session.file_name}: {e}")
            self._report(f"Could not save {session.file_name}.")
            return
        self.files_delivered += 1
        await self.received.put(path)
        if self.on_file_received:
            self.on_file_received(path, session)

    def _on_transfer_error(self, error: Exception):
        logger.warning(f"Transfer error: {error}")
        file_id = getattr(error, 'file_id', None)
        future = self._sent.get(file_id)
        outgoing = self.transfers.sender.session
        if future is not None and not future.done():
            if outgoing is None or outgoing.file_id != file_id:
                # The sender dropped this file; nothing will complete it
                future.set_exception(error)
            elif (file_id in self._stop_on_pause
                    and self.transfers.sender.state == SenderState.PAUSED):
                future.set_exception(error)
        self._update_wake_lock()
        self._report(str(error))

    # === Helpers ===

    async def _request_room(self, kind: ControlMessageType, timeout: float, **fields) -> str:
        self._room_reply = asyncio.get_running_loop().create_future()
        try:
            await self.client.send(kind, **fields)
            return await asyncio.wait_for(self._room_reply, timeout)
        except asyncio.TimeoutError:
            self._set_room_state(RoomState.IDLE)
            raise TransportError(f"No reply from broker to {kind.value}")
        finally:
            self._room_reply = None

    def _resolve_room(self, code: Optional[str] = None, error: Optional[Exception] = None):
        future = self._room_reply
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(code)

    async def _reset_room(self):
        """Drop any previous pairing before a new create or join."""
        if self.room_state != RoomState.IDLE or self.coordinator is not None:
            await self._teardown_peer()
            self.transfers.cancel()
            self._fail_pending(TransferError("Room changed"))
            self.room_code = None
            self.role = None
            self._set_room_state(RoomState.IDLE)

    def _mark_lost(self, reason: str, room_closed: bool = False):
        self._lost_reason = reason
        self._peer_lost.set()
        if room_closed:
            self._room_closed.set()

    async def _wait_unless(self, awaitable: Awaitable, stop: asyncio.Event,
                           timeout: Optional[float]):
        """Await `awaitable`, failing with TransportError if `stop` is set first."""
        waiter = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({waiter, stopper}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not waiter.done():
                waiter.cancel()
        if waiter in done:
            return waiter.result()
        if stopper in done:
            raise TransportError(self._lost_reason)
        raise asyncio.TimeoutError()

    def _fail_pending(self, error: Exception):
        for future in self._sent.values():
            if not future.done():
                future.set_exception(error)
        self._sent.clear()

    def _set_room_state(self, state: RoomState):
        if state == self.room_state:
            return
        logger.debug(f"Room state {self.room_state.value} -> {state.value}")
        self.room_state = state
        if self.on_room_state:
            self.on_room_state(state)

    def _update_wake_lock(self):
        if self.transfers.is_busy:
            self.wake_lock.acquire()
        else:
            self.wake_lock.release()

    def _report(self, text: str):
        if self.on_error:
            self.on_error(text)

    def get_stats(self) -> dict:
        """Get complete endpoint statistics."""
        return {
            'room_state': self.room_state.value,
            'room_code': self.room_code,
            'role': self.role.value if self.role else None,
            'handshake': self.coordinator.state.value if self.coordinator else None,
            'channel_open': self.channel_open,
            'pairings': self.pairings,
            'files_delivered': self.files_delivered,
            'transfers': self.transfers.get_stats(),
        }
