"""
Handshake Coordinator

Drives one endpoint through WebRTC negotiation over the broker relay until
the direct data channel is open.

States:
```
IDLE -> OFFER_CREATED  (initiator) -> ANSWER_EXCHANGED -> CHANNEL_OPEN
IDLE -> OFFER_RECEIVED (joiner)    -> ANSWER_EXCHANGED -> CHANNEL_OPEN
any -> CLOSED
```

Design Decision: Early ICE Candidates
=====================================

A remote candidate can arrive before the offer or answer it belongs to
(the relay preserves order per sender, but the two sides race). A candidate
cannot be added until a remote description is set, so early candidates are
queued and flushed in receipt order, one add per queued entry, as soon as a
remote description is in place. Reordering them is not allowed.

aiortc gathers its own candidates into the SDP it produces, so this side
never trickles candidates; the queue exists for peers that do (browsers).
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from ..errors import ProtocolError
from ..signaling.messages import ControlMessageType

logger = logging.getLogger(__name__)

DATA_CHANNEL_NAME = 'fusion-share'


class HandshakeState(Enum):
    IDLE = "idle"
    OFFER_CREATED = "offer_created"
    OFFER_RECEIVED = "offer_received"
    ANSWER_EXCHANGED = "answer_exchanged"
    CHANNEL_OPEN = "channel_open"
    CLOSED = "closed"


class HandshakeRole(Enum):
    INITIATOR = "initiator"
    JOINER = "joiner"


_TRANSITIONS = {
    HandshakeState.IDLE: {HandshakeState.OFFER_CREATED, HandshakeState.OFFER_RECEIVED},
    HandshakeState.OFFER_CREATED: {HandshakeState.ANSWER_EXCHANGED},
    HandshakeState.OFFER_RECEIVED: {HandshakeState.ANSWER_EXCHANGED},
    HandshakeState.ANSWER_EXCHANGED: {HandshakeState.CHANNEL_OPEN},
    HandshakeState.CHANNEL_OPEN: set(),
    HandshakeState.CLOSED: set(),
}

SignalSender = Callable[..., Awaitable[None]]


def describe(description) -> Dict[str, str]:
    """Session description as the JSON object browsers exchange."""
    return {'type': description.type, 'sdp': description.sdp}


def to_description(sdp: Any) -> RTCSessionDescription:
    """
    Build an RTCSessionDescription from a relayed `sdp` value.

    Raises:
        ProtocolError: if the value is not a {type, sdp} object
    """
    if not isinstance(sdp, dict) or not isinstance(sdp.get('sdp'), str):
        raise ProtocolError("Session description must be an object with 'type' and 'sdp'")
    if sdp.get('type') not in ('offer', 'answer', 'pranswer', 'rollback'):
        raise ProtocolError(f"Invalid session description type: {sdp.get('type')!r}")
    return RTCSessionDescription(sdp=sdp['sdp'], type=sdp['type'])


def parse_candidate(init: Any):
    """
    Convert a relayed RTCIceCandidateInit into an aiortc candidate.

    Returns None for the empty end-of-candidates marker.

    Raises:
        ProtocolError: if the candidate line cannot be parsed
    """
    if init is None:
        return None
    if isinstance(init, str):
        init = {'candidate': init}
    if not isinstance(init, dict):
        raise ProtocolError(f"Unexpected candidate value: {type(init).__name__}")

    line = (init.get('candidate') or '').strip()
    if not line:
        return None
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    # foundation component protocol priority ip port "typ" type [extensions]
    if len(line.split()) < 8:
        raise ProtocolError(f"Malformed ICE candidate: {line!r}")

    try:
        candidate = candidate_from_sdp(line)
    except (ValueError, IndexError) as e:
        raise ProtocolError(f"Malformed ICE candidate: {e}")
    candidate.sdpMid = init.get('sdpMid')
    candidate.sdpMLineIndex = init.get('sdpMLineIndex')
    return candidate


def default_peer_connection_factory(ice_servers: List[str]) -> Callable[[], RTCPeerConnection]:
    def factory() -> RTCPeerConnection:
        return RTCPeerConnection(RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        ))
    return factory


class HandshakeCoordinator:
    """
    One negotiation between this endpoint and its paired peer.

    A coordinator is single-use: once CLOSED, the endpoint creates a new one
    for the next pairing.
    """

    def __init__(self, role: HandshakeRole, send_signal: SignalSender,
                 ice_servers: Optional[List[str]] = None,
                 on_channel_open: Optional[Callable[[Any], None]] = None,
                 on_channel_message: Optional[Callable[[Any], None]] = None,
                 on_channel_close: Optional[Callable[[], None]] = None,
                 peer_connection_factory: Optional[Callable[[], Any]] = None):
        """
        Args:
            role: initiator creates the offer, joiner answers it
            send_signal: `async send_signal(kind, **fields)` relays via the broker
            peer_connection_factory: builds the peer connection (aiortc by default)
        """
        self.role = role
        self._send_signal = send_signal
        self.on_channel_open = on_channel_open
        self.on_channel_message = on_channel_message
        self.on_channel_close = on_channel_close
        self._factory = peer_connection_factory or default_peer_connection_factory(
            ice_servers or []
        )

        self.state = HandshakeState.IDLE
        self.pc = None
        self.channel = None
        self._pending_candidates: List[Any] = []
        self._close_notified = False

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    # === Negotiation ===

    async def start(self):
        """Initiator: create the data channel and send an offer."""
        if self.role != HandshakeRole.INITIATOR:
            raise ProtocolError("Only the initiator creates an offer")
        self._check_state(HandshakeState.OFFER_CREATED)

        self.pc = self._create_peer_connection()
        self._bind_channel(self.pc.createDataChannel(DATA_CHANNEL_NAME))

        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        self._transition(HandshakeState.OFFER_CREATED)

        logger.info("Offer created, sending via broker")
        await self._send_signal(ControlMessageType.RTC_OFFER,
                                sdp=describe(self.pc.localDescription))

    async def handle_offer(self, sdp: Any):
        """Joiner: accept the offer and answer it."""
        if self.role != HandshakeRole.JOINER:
            raise ProtocolError("Initiator received an offer")
        self._check_state(HandshakeState.OFFER_RECEIVED)
        description = to_description(sdp)

        self._transition(HandshakeState.OFFER_RECEIVED)
        self.pc = self._create_peer_connection()
        self.pc.on("datachannel", self._on_datachannel)

        await self.pc.setRemoteDescription(description)
        await self._flush_candidates()

        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        self._transition(HandshakeState.ANSWER_EXCHANGED)

        logger.info("Answer created, sending via broker")
        await self._send_signal(ControlMessageType.RTC_ANSWER,
                                sdp=describe(self.pc.localDescription))

    async def handle_answer(self, sdp: Any):
        """Initiator: apply the joiner's answer."""
        if self.role != HandshakeRole.INITIATOR:
            raise ProtocolError("Joiner received an answer")
        self._check_state(HandshakeState.ANSWER_EXCHANGED)
        description = to_description(sdp)

        await self.pc.setRemoteDescription(description)
        await self._flush_candidates()
        self._transition(HandshakeState.ANSWER_EXCHANGED)
        logger.info("Remote description set")

    async def handle_candidate(self, candidate: Any):
        """Add a remote candidate now, or queue it until a remote description exists."""
        if self.state == HandshakeState.CLOSED:
            logger.debug("Ignoring ICE candidate after close")
            return
        if self.pc is None or self.pc.remoteDescription is None:
            logger.debug("Queuing ICE candidate (no remote description yet)")
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(candidate)

    async def close(self):
        """Tear down the peer connection. Safe to call more than once."""
        if self.state == HandshakeState.CLOSED:
            return
        was_open = self.state == HandshakeState.CHANNEL_OPEN
        self.state = HandshakeState.CLOSED
        self._pending_candidates.clear()

        pc, self.pc = self.pc, None
        if pc is not None:
            await pc.close()
        self.channel = None
        logger.info("Handshake closed")
        if was_open:
            self._notify_closed()

    # === Internals ===

    def _create_peer_connection(self):
        pc = self._factory()

        def on_connection_state():
            logger.info(f"Connection state: {pc.connectionState}")
            if pc.connectionState == "failed" and self.state != HandshakeState.CLOSED:
                asyncio.ensure_future(self.close())

        pc.on("connectionstatechange", on_connection_state)
        return pc

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"Flushing {len(pending)} queued ICE candidates")
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, init: Any):
        try:
            candidate = parse_candidate(init)
        except ProtocolError as e:
            logger.warning(f"Skipping ICE candidate: {e}")
            return
        if candidate is None:
            logger.debug("End of remote candidates")
            return
        try:
            await self.pc.addIceCandidate(candidate)
            logger.debug("ICE candidate added")
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")

    def _bind_channel(self, channel):
        self.channel = channel
        channel.on("open", self._on_channel_open)
        channel.on("message", self._on_channel_message)
        channel.on("close", self._on_channel_close)

    def _on_datachannel(self, channel):
        logger.info(f"Received data channel '{channel.label}' from peer")
        self._bind_channel(channel)
        # aiortc announces remote channels once they are already open
        if channel.readyState == "open":
            self._on_channel_open()

    def _on_channel_open(self):
        if self.state in (HandshakeState.CHANNEL_OPEN, HandshakeState.CLOSED):
            return
        try:
            self._transition(HandshakeState.CHANNEL_OPEN)
        except ProtocolError as e:
            logger.warning(f"Data channel opened out of sequence: {e}")
            self.state = HandshakeState.CHANNEL_OPEN
        logger.info("Data channel open")
        if self.on_channel_open:
            self.on_channel_open(self.channel)

    def _on_channel_message(self, message):
        if self.state == HandshakeState.CLOSED:
            return
        if self.on_channel_message:
            self.on_channel_message(message)

    def _on_channel_close(self):
        if self.state == HandshakeState.CLOSED:
            return
        logger.info("Data channel closed")
        was_open = self.state == HandshakeState.CHANNEL_OPEN
        self.state = HandshakeState.CLOSED
        self.channel = None
        if was_open:
            self._notify_closed()
        pc, self.pc = self.pc, None
        if pc is not None:
            asyncio.ensure_future(pc.close())

    def _notify_closed(self):
        if self._close_notified:
            return
        self._close_notified = True
        if self.on_channel_close:
            self.on_channel_close()

    def _check_state(self, target: HandshakeState):
        if target not in _TRANSITIONS[self.state]:
            raise ProtocolError(
                f"Cannot move from {self.state.value} to {target.value}"
            )

    def _transition(self, target: HandshakeState):
        self._check_state(target)
        logger.debug(f"Handshake {self.state.value} -> {target.value}")
        self.state = target
