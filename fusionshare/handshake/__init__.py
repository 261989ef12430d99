"""
Handshake Module - WebRTC Negotiation

Offer/answer and ICE candidate exchange over the broker relay.
"""

from .coordinator import (
    HandshakeCoordinator, HandshakeState, HandshakeRole,
    DATA_CHANNEL_NAME, parse_candidate, to_description, describe,
)

__all__ = [
    'HandshakeCoordinator',
    'HandshakeState',
    'HandshakeRole',
    'DATA_CHANNEL_NAME',
    'parse_candidate',
    'to_description',
    'describe',
]
