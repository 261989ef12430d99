"""
Transfer Sessions

Each endpoint keeps its own TransferSession per role. Sender and receiver
never share an object; they agree only through the fileId and chunk indices
carried in messages.
"""

import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Union


class SenderState(Enum):
    IDLE = "idle"
    METADATA_SENT = "metadata_sent"
    SENDING = "sending"
    AWAITING_ACK = "awaiting_ack"
    PAUSED = "paused"
    COMPLETE = "complete"


class ReceiverState(Enum):
    IDLE = "idle"
    AWAITING_CHUNKS = "awaiting_chunks"
    RECEIVING = "receiving"
    PAUSED = "paused"
    COMPLETE = "complete"


def new_file_id() -> str:
    return uuid.uuid4().hex


@dataclass
class TransferSession:
    """
    State of one file transfer in one role.

    `cursor` is the next chunk index to transmit (sender) or to accept
    (receiver). `chunk_buffer` holds payloads by index: encoded chunks not
    yet acknowledged on the sender, decoded accepted chunks on the receiver.
    """
    file_id: str
    file_name: str
    size: int
    chunk_size: int
    total_chunks: int
    mime_type: str = ''
    sha256: Optional[str] = None
    cursor: int = 0
    chunk_buffer: Dict[int, Union[str, bytes]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def is_finished(self) -> bool:
        return self.cursor >= self.total_chunks

    @property
    def bytes_done(self) -> int:
        """Bytes covered by chunks before the cursor."""
        return min(self.cursor * self.chunk_size, self.size)

    def release(self, index: int):
        """Drop a buffered payload once it is no longer needed."""
        self.chunk_buffer.pop(index, None)


@dataclass
class TransferProgress:
    """Snapshot handed to progress callbacks."""
    file_id: str
    file_name: str
    role: str  # 'sender' or 'receiver'
    state: str
    chunks_done: int
    total_chunks: int
    bytes_done: int
    size: int
    started_at: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_chunks == 0:
            return 1.0
        return self.chunks_done / self.total_chunks

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.started_at

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_done / elapsed

    @classmethod
    def from_session(cls, session: TransferSession, role: str, state: Enum) -> 'TransferProgress':
        return cls(
            file_id=session.file_id,
            file_name=session.file_name,
            role=role,
            state=state.value,
            chunks_done=session.cursor,
            total_chunks=session.total_chunks,
            bytes_done=session.bytes_done,
            size=session.size,
            started_at=session.started_at,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'file_id': self.file_id,
            'file_name': self.file_name,
            'role': self.role,
            'state': self.state,
            'chunks_done': self.chunks_done,
            'total_chunks': self.total_chunks,
            'bytes_done': self.bytes_done,
            'size': self.size,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
        }


ProgressCallback = Callable[[TransferProgress], None]
ErrorCallback = Callable[[Exception], None]
# Sends one text frame on the direct channel; raises if the channel is gone
SendFunction = Callable[[str], None]


class TransferRole:
    """
    Shared plumbing for the sender and receiver state machines.

    Subclasses set `role`, keep `state` and `session`, and only change state
    inside their own transition methods.
    """
    role = ''
    idle_state: Enum = None

    def __init__(self, send: Optional[SendFunction] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self._send_fn = send
        self.on_progress = on_progress
        self.on_error = on_error
        self.session: Optional[TransferSession] = None
        self.state = self.idle_state

    @property
    def channel_attached(self) -> bool:
        return self._send_fn is not None

    @property
    def is_active(self) -> bool:
        """True while a session exists, paused or not."""
        return self.session is not None

    def attach(self, send: SendFunction):
        """Use a (re)opened direct channel for outgoing frames."""
        self._send_fn = send

    def detach(self):
        self._send_fn = None

    def _send_frame(self, frame: str):
        if self._send_fn is None:
            raise ConnectionError("Direct channel not open")
        self._send_fn(frame)

    def _emit_progress(self, session: Optional[TransferSession] = None):
        session = session or self.session
        if self.on_progress and session:
            self.on_progress(TransferProgress.from_session(session, self.role, self.state))

    def _report(self, error: Exception):
        if self.on_error:
            self.on_error(error)
