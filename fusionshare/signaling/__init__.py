"""
Signaling Module - Rooms, Broker and Control Connection

Pairs two endpoints in an ephemeral room and relays their handshake.
"""

from .messages import ControlMessage, ControlMessageType, make_message
from .rooms import Room, RoomRegistry, generate_room_code, ROOM_CODE_ALPHABET
from .broker import SignalingBroker
from .client import SignalingClient

__all__ = [
    'ControlMessage',
    'ControlMessageType',
    'make_message',
    'Room',
    'RoomRegistry',
    'generate_room_code',
    'ROOM_CODE_ALPHABET',
    'SignalingBroker',
    'SignalingClient',
]
