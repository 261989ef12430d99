"""
Transfer Module - Chunked Stop-and-Wait File Transfer

Runs over an established direct channel.
"""

from .chunker import FileChunker, CHUNK_SIZE
from .messages import (
    DataMessageType, FileMeta, FileChunk, ChunkAck, ResumeRequest,
    encode_message, decode_message,
)
from .session import SenderState, ReceiverState, TransferSession, TransferProgress
from .sender import TransferSender
from .receiver import TransferReceiver
from .manager import TransferManager

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'DataMessageType',
    'FileMeta',
    'FileChunk',
    'ChunkAck',
    'ResumeRequest',
    'encode_message',
    'decode_message',
    'SenderState',
    'ReceiverState',
    'TransferSession',
    'TransferProgress',
    'TransferSender',
    'TransferReceiver',
    'TransferManager',
]
