"""
Transfer Sender

Design Decision: Flow Control
=============================

Options Considered:
1. Sliding window (N chunks in flight)
   - Best throughput on high-latency links
   - Receiver needs a reorder buffer, sender buffers N chunks

2. Rely on the data channel's own buffering (bufferedAmount)
   - No acknowledgments at all
   - Nothing to resume from after a drop

3. Stop-and-wait (one chunk in flight)
   - One buffered chunk per side, trivial receiver
   - One round trip per chunk

Decision: Stop-and-wait
- Chunk `cursor` is sent, then nothing else until CHUNK_ACK(cursor)
- The acknowledged payload is released immediately
- Progress is always "everything below cursor", which makes resume a
  single integer

States:
```
IDLE -> METADATA_SENT -> SENDING <-> AWAITING_ACK -> COMPLETE
                          SENDING / AWAITING_ACK -> PAUSED
```
"""

import asyncio
import hashlib
import logging
from typing import Callable, Optional

from .chunker import FileChunker, CHUNK_SIZE, encode_chunk
from .messages import FileMeta, FileChunk, ChunkAck, ResumeRequest, encode_message
from .session import (
    SenderState, TransferSession, TransferRole, new_file_id,
    SendFunction, ProgressCallback, ErrorCallback,
)
from ..errors import TransferError

logger = logging.getLogger(__name__)

SenderCompleteCallback = Callable[[TransferSession], None]

# States in which the sender is pushing a file
_ACTIVE = (SenderState.METADATA_SENT, SenderState.SENDING, SenderState.AWAITING_ACK)


class TransferSender(TransferRole):
    """
    Sending side of the transfer state machine.

    Methods are synchronous and never re-entered: the endpoint calls them
    from data-channel callbacks on a single event loop.
    """
    role = 'sender'
    idle_state = SenderState.IDLE

    def __init__(self, send: Optional[SendFunction] = None,
                 chunk_size: int = CHUNK_SIZE,
                 ack_timeout: Optional[float] = None,
                 max_retries: int = 3,
                 on_progress: Optional[ProgressCallback] = None,
                 on_complete: Optional[SenderCompleteCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        """
        Args:
            send: writes one text frame to the direct channel
            chunk_size: bytes per chunk
            ack_timeout: seconds to wait for an ack before retransmitting
                (None disables the timer)
            max_retries: retransmissions of one chunk before pausing
        """
        super().__init__(send, on_progress, on_error)
        self.chunker = FileChunker(chunk_size)
        self.ack_timeout = ack_timeout
        self.max_retries = max_retries
        self.on_complete = on_complete

        self._data: bytes = b''
        self._retries = 0
        self._timer: Optional[asyncio.TimerHandle] = None

        # Statistics
        self.chunks_sent = 0
        self.retransmissions = 0
        self.files_sent = 0

    @property
    def in_flight(self) -> Optional[int]:
        """Index of the chunk awaiting acknowledgment, if any."""
        if self.state == SenderState.AWAITING_ACK and self.session:
            return self.session.cursor
        return None

    # === Transitions ===

    def start(self, file_name: str, data: bytes, mime_type: str = '',
              file_id: Optional[str] = None) -> TransferSession:
        """
        Announce a file and send its first chunk.

        Raises:
            TransferError: if another session is active or the metadata
                cannot be sent
        """
        if self.session is not None and self.session.file_id != file_id:
            raise TransferError(
                f"Already sending {self.session.file_name}", self.session.file_id
            )

        session = TransferSession(
            file_id=file_id or new_file_id(),
            file_name=file_name,
            size=len(data),
            chunk_size=self.chunker.chunk_size,
            total_chunks=self.chunker.get_chunk_count(len(data)),
            mime_type=mime_type,
            sha256=hashlib.sha256(data).hexdigest(),
        )
        meta = FileMeta(
            file_id=session.file_id,
            name=session.file_name,
            size=session.size,
            mime_type=session.mime_type,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            sha256=session.sha256,
        )

        try:
            self._send_frame(encode_message(meta))
        except Exception as e:
            raise TransferError(f"Could not send metadata: {e}", session.file_id) from e

        self.session = session
        self._data = data
        self._retries = 0
        self.state = SenderState.METADATA_SENT
        logger.info(f"Sending {file_name}: {session.size:,} bytes, "
                    f"{session.total_chunks} chunks")

        if session.is_finished:
            self._complete()
        else:
            self._send_current()
        return session

    def handle_ack(self, ack: ChunkAck):
        """Advance past the in-flight chunk if `ack` matches it."""
        session = self.session
        if session is None or ack.file_id != session.file_id:
            logger.debug(f"Ignoring ack for unknown file {ack.file_id[:8]}")
            return
        if self.state != SenderState.AWAITING_ACK or ack.index != session.cursor:
            logger.debug(f"Ignoring ack {ack.index} (cursor {session.cursor}, "
                         f"state {self.state.value})")
            return

        self._cancel_timer()
        session.release(session.cursor)
        session.cursor += 1
        self._retries = 0
        self.state = SenderState.SENDING
        self._emit_progress()

        if session.is_finished:
            self._complete()
        else:
            self._send_current()

    def handle_resume(self, request: ResumeRequest):
        """Continue from the chunk after the receiver's last accepted one."""
        session = self.session
        if session is None or request.file_id != session.file_id:
            logger.warning(f"Resume request for unknown file {request.file_id[:8]}")
            return

        next_index = min(request.last_received_chunk + 1, session.total_chunks)
        logger.info(f"Resuming {session.file_name} at chunk {next_index}/{session.total_chunks}")

        self._cancel_timer()
        for index in list(session.chunk_buffer):
            if index < next_index:
                session.release(index)
        session.cursor = next_index
        self._retries = 0
        self.state = SenderState.SENDING

        if session.is_finished:
            self._complete()
        else:
            self._send_current()

    def retry(self) -> bool:
        """
        Resend the current unacknowledged chunk after a pause.

        The cursor does not move. Returns False if there is nothing to retry.
        """
        if self.session is None or self.state != SenderState.PAUSED:
            return False
        if not self.channel_attached:
            logger.info("Cannot retry: direct channel not open")
            return False
        logger.info(f"Retrying chunk {self.session.cursor} of {self.session.file_name}")
        self._retries = 0
        self._send_current()
        return True

    def channel_closed(self):
        """The direct channel went away: pause, keep the session."""
        self.detach()
        self._cancel_timer()
        if self.state in _ACTIVE:
            self.state = SenderState.PAUSED
            logger.info(f"Paused sending {self.session.file_name} at chunk {self.session.cursor}")
            self._emit_progress()

    def cancel(self):
        """Discard the current session."""
        self._cancel_timer()
        if self.session is not None:
            logger.info(f"Cancelled sending {self.session.file_name}")
        self.session = None
        self._data = b''
        self.state = SenderState.IDLE

    # === Internals ===

    def _send_current(self):
        session = self.session
        index = session.cursor
        self.state = SenderState.SENDING

        payload = session.chunk_buffer.get(index)
        if payload is None:
            payload = encode_chunk(self.chunker.get_chunk(self._data, index))
            session.chunk_buffer[index] = payload

        frame = encode_message(FileChunk(file_id=session.file_id, index=index, data=payload))
        try:
            self._send_frame(frame)
        except Exception as e:
            self._pause(TransferError(f"Send of chunk {index} failed: {e}", session.file_id))
            return

        self.chunks_sent += 1
        self.state = SenderState.AWAITING_ACK
        self._arm_timer()

    def _pause(self, error: TransferError):
        self._cancel_timer()
        self.state = SenderState.PAUSED
        logger.warning(f"Sender paused: {error}")
        self._emit_progress()
        self._report(error)

    def _complete(self):
        session = self.session
        self._cancel_timer()
        self.state = SenderState.COMPLETE
        self._emit_progress()
        self.files_sent += 1
        logger.info(f"Sent {session.file_name} ({session.size:,} bytes)")

        self.session = None
        self._data = b''
        if self.on_complete:
            self.on_complete(session)

    def _arm_timer(self):
        if self.ack_timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.ack_timeout, self._on_ack_timeout)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_ack_timeout(self):
        self._timer = None
        if self.state != SenderState.AWAITING_ACK:
            return

        index = self.session.cursor
        self._retries += 1
        if self._retries > self.max_retries:
            self._pause(TransferError(
                f"No acknowledgment for chunk {index} after {self.max_retries} retries",
                self.session.file_id,
            ))
            return

        logger.warning(f"Ack timeout for chunk {index}, retransmitting "
                       f"({self._retries}/{self.max_retries})")
        self.retransmissions += 1
        self._send_current()

    def get_stats(self) -> dict:
        """Get sender statistics."""
        return {
            'state': self.state.value,
            'chunks_sent': self.chunks_sent,
            'retransmissions': self.retransmissions,
            'files_sent': self.files_sent,
        }
