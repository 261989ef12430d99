"""
Direct-Channel Protocol

Design Decision: Wire Format
============================

Options Considered:
1. Binary frames for chunks, JSON for control
   - No base64 overhead
   - Needs two decoders and a way to correlate a binary frame with its index

2. JSON text frames for everything
   - One decoder, every frame self-describing (fileId + index)
   - Base64 costs a third more bytes per chunk

Decision: JSON text frames
- A chunk frame names its file and index, so the receiver can check it
  against its cursor without any out-of-band state
- Works over any data channel that can carry text

Message Format:
```
{"type": "FILE_META", "fileId": "...", "name": "a.bin", "size": 40000,
 "mimeType": "application/octet-stream", "chunkSize": 16384, "totalChunks": 3}
{"type": "FILE_CHUNK", "fileId": "...", "index": 0, "data": "<base64>"}
{"type": "CHUNK_ACK", "fileId": "...", "index": 0}
{"type": "RESUME_REQUEST", "fileId": "...", "lastReceivedChunk": 1}
```

FILE_META may also carry `sha256`, the hex digest of the whole file.
"""

import json
from enum import Enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..errors import ProtocolError


class DataMessageType(Enum):
    """Direct-channel message types."""
    FILE_META = "FILE_META"
    FILE_CHUNK = "FILE_CHUNK"
    CHUNK_ACK = "CHUNK_ACK"
    RESUME_REQUEST = "RESUME_REQUEST"


def _require(data: Dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    # bool is an int subclass; never a valid count or index
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ProtocolError(f"Field '{key}' missing or not {kind.__name__}")
    return value


def _optional(data: Dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if value is not None and not isinstance(value, kind):
        raise ProtocolError(f"Field '{key}' must be {kind.__name__}")
    return value


def _require_count(data: Dict[str, Any], key: str, minimum: int = 0) -> int:
    value = _require(data, key, int)
    if value < minimum:
        raise ProtocolError(f"Field '{key}' must be >= {minimum}, got {value}")
    return value


@dataclass
class FileMeta:
    """Announces a file before its first chunk."""
    file_id: str
    name: str
    size: int
    mime_type: str
    chunk_size: int
    total_chunks: int
    sha256: Optional[str] = None

    type = DataMessageType.FILE_META

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'type': self.type.value,
            'fileId': self.file_id,
            'name': self.name,
            'size': self.size,
            'mimeType': self.mime_type,
            'chunkSize': self.chunk_size,
            'totalChunks': self.total_chunks,
        }
        if self.sha256:
            data['sha256'] = self.sha256
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileMeta':
        meta = cls(
            file_id=_require(data, 'fileId', str),
            name=_require(data, 'name', str),
            size=_require_count(data, 'size'),
            mime_type=_optional(data, 'mimeType', str) or '',
            chunk_size=_require_count(data, 'chunkSize', minimum=1),
            total_chunks=_require_count(data, 'totalChunks'),
            sha256=_optional(data, 'sha256', str) or None,
        )
        expected = (meta.size + meta.chunk_size - 1) // meta.chunk_size
        if meta.total_chunks != expected:
            raise ProtocolError(
                f"totalChunks {meta.total_chunks} inconsistent with size "
                f"{meta.size} / chunkSize {meta.chunk_size}"
            )
        return meta


@dataclass
class FileChunk:
    """One chunk payload, base64-encoded."""
    file_id: str
    index: int
    data: str

    type = DataMessageType.FILE_CHUNK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'fileId': self.file_id,
            'index': self.index,
            'data': self.data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileChunk':
        return cls(
            file_id=_require(data, 'fileId', str),
            index=_require_count(data, 'index'),
            data=_require(data, 'data', str),
        )


@dataclass
class ChunkAck:
    """Receiver accepted chunk `index`."""
    file_id: str
    index: int

    type = DataMessageType.CHUNK_ACK

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'fileId': self.file_id, 'index': self.index}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChunkAck':
        return cls(
            file_id=_require(data, 'fileId', str),
            index=_require_count(data, 'index'),
        )


@dataclass
class ResumeRequest:
    """Receiver asks the sender to continue after `last_received_chunk` (-1: from start)."""
    file_id: str
    last_received_chunk: int

    type = DataMessageType.RESUME_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'fileId': self.file_id,
            'lastReceivedChunk': self.last_received_chunk,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResumeRequest':
        return cls(
            file_id=_require(data, 'fileId', str),
            last_received_chunk=_require_count(data, 'lastReceivedChunk', minimum=-1),
        )


DataMessage = Union[FileMeta, FileChunk, ChunkAck, ResumeRequest]

MESSAGE_CLASSES = {
    DataMessageType.FILE_META: FileMeta,
    DataMessageType.FILE_CHUNK: FileChunk,
    DataMessageType.CHUNK_ACK: ChunkAck,
    DataMessageType.RESUME_REQUEST: ResumeRequest,
}


def encode_message(message: DataMessage) -> str:
    """Serialize a direct-channel message to a text frame."""
    return json.dumps(message.to_dict())


def decode_message(raw: Union[str, bytes]) -> DataMessage:
    """
    Parse a direct-channel text frame.

    Raises:
        ProtocolError: on invalid JSON, unknown type or bad fields
    """
    if isinstance(raw, bytes):
        raise ProtocolError("Binary frames are not part of the protocol")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"Invalid JSON on data channel: {e}")
    if not isinstance(data, dict):
        raise ProtocolError("Data channel message must be an object")

    try:
        msg_type = DataMessageType(data.get('type'))
    except ValueError:
        raise ProtocolError(f"Unknown data channel message type: {data.get('type')!r}")

    return MESSAGE_CLASSES[msg_type].from_dict(data)
