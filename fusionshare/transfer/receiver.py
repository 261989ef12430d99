"""
Transfer Receiver

Accepts chunks strictly in order: a chunk is taken only when its index
equals the receiver's cursor. Anything else is dropped and logged without
touching the session. The sender's stop-and-wait discipline means a
mismatch never happens legitimately, so there is no reorder buffer.

States:
```
IDLE -> AWAITING_CHUNKS <-> RECEIVING -> COMPLETE
                  any active state -> PAUSED (channel loss, failed ack)
```

The ack for the final chunk can be lost after this side has already
completed. The last completed file is remembered so a retransmitted final
chunk is acknowledged again, and a reopened channel tells the sender that
every chunk arrived.
"""

import hashlib
import logging
from typing import Callable, Optional, Tuple

from .chunker import assemble_chunks, decode_chunk
from .messages import FileMeta, FileChunk, ChunkAck, ResumeRequest, encode_message
from .session import (
    ReceiverState, TransferSession, TransferRole,
    SendFunction, ProgressCallback, ErrorCallback,
)
from ..errors import TransferError

logger = logging.getLogger(__name__)

ReceiverCompleteCallback = Callable[[TransferSession, bytes], None]


class TransferReceiver(TransferRole):
    """Receiving side of the transfer state machine."""
    role = 'receiver'
    idle_state = ReceiverState.IDLE

    def __init__(self, send: Optional[SendFunction] = None,
                 on_progress: Optional[ProgressCallback] = None,
                 on_complete: Optional[ReceiverCompleteCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        super().__init__(send, on_progress, on_error)
        self.on_complete = on_complete

        # (file_id, total_chunks) of the last file completed
        self._completed: Optional[Tuple[str, int]] = None

        # Statistics
        self.chunks_accepted = 0
        self.chunks_rejected = 0
        self.files_received = 0

    @property
    def last_received_chunk(self) -> int:
        """Index of the last accepted chunk, -1 if none."""
        if self.session is None:
            return -1
        return self.session.cursor - 1

    # === Transitions ===

    def handle_meta(self, meta: FileMeta) -> bool:
        """
        Open a session for an announced file.

        Returns False (and reports a TransferError) if a session is already
        active: a second FILE_META is ignored.
        """
        if self.session is not None:
            logger.warning(f"Busy receiving {self.session.file_name}, "
                           f"ignoring FILE_META for {meta.name}")
            self._report(TransferError(
                f"Ignored {meta.name}: already receiving {self.session.file_name}",
                meta.file_id,
            ))
            return False

        # A new announcement means the peer's sender finished the previous file
        self._completed = None
        self.session = TransferSession(
            file_id=meta.file_id,
            file_name=meta.name,
            size=meta.size,
            chunk_size=meta.chunk_size,
            total_chunks=meta.total_chunks,
            mime_type=meta.mime_type,
            sha256=meta.sha256,
        )
        self.state = ReceiverState.AWAITING_CHUNKS
        logger.info(f"Receiving {meta.name}: {meta.size:,} bytes, {meta.total_chunks} chunks")
        self._emit_progress()

        if self.session.is_finished:
            self._complete()
        return True

    def handle_chunk(self, chunk: FileChunk) -> bool:
        """
        Accept the chunk iff its index equals the cursor.

        Returns True if the chunk was accepted.
        """
        session = self.session
        if session is None or chunk.file_id != session.file_id:
            self.chunks_rejected += 1
            if self._completed == (chunk.file_id, chunk.index + 1):
                logger.info(f"Final chunk {chunk.index} repeated after completion, "
                            f"re-acknowledging")
                self._send_ack(chunk.file_id, chunk.index)
            else:
                logger.warning(f"Rejecting chunk {chunk.index} for unknown file "
                               f"{chunk.file_id[:8]}")
            return False

        if chunk.index != session.cursor:
            self.chunks_rejected += 1
            if chunk.index == session.cursor - 1:
                # Our ack was lost; the sender is retransmitting
                logger.info(f"Duplicate chunk {chunk.index}, re-acknowledging")
                self._send_ack(session.file_id, chunk.index)
            else:
                logger.warning(f"Rejecting out-of-order chunk {chunk.index} "
                               f"(expected {session.cursor})")
            return False

        try:
            payload = decode_chunk(chunk.data)
        except ValueError as e:
            self.chunks_rejected += 1
            logger.warning(f"Rejecting chunk {chunk.index}: {e}")
            return False

        session.chunk_buffer[chunk.index] = payload
        session.cursor += 1
        self.chunks_accepted += 1
        self.state = ReceiverState.RECEIVING

        self._send_ack(session.file_id, chunk.index)
        self._emit_progress()

        if session.is_finished:
            self._complete()
        return True

    def resume(self) -> bool:
        """
        Ask the sender to continue after the last accepted chunk.

        Only meaningful while paused with an attached channel. With no
        session, a completed file is reported as fully received so a sender
        still waiting on the final ack can finish.
        """
        session = self.session
        if session is None:
            return self._confirm_completed()
        if self.state != ReceiverState.PAUSED:
            return False
        if not self.channel_attached:
            logger.info("Cannot resume: direct channel not open")
            return False

        request = ResumeRequest(file_id=session.file_id,
                                last_received_chunk=self.last_received_chunk)
        if not self._send_resume(request):
            return False

        self.state = ReceiverState.RECEIVING if session.cursor else ReceiverState.AWAITING_CHUNKS
        logger.info(f"Requested resume of {session.file_name} after chunk "
                    f"{request.last_received_chunk}")
        return True

    def channel_closed(self):
        """The direct channel went away: pause, keep what was accepted."""
        self.detach()
        if self.session is not None and self.state in (
                ReceiverState.AWAITING_CHUNKS, ReceiverState.RECEIVING):
            self.state = ReceiverState.PAUSED
            logger.info(f"Paused receiving {self.session.file_name} at chunk {self.session.cursor}")
            self._emit_progress()

    def cancel(self):
        """Discard the current session and any partial data."""
        if self.session is not None:
            logger.info(f"Cancelled receiving {self.session.file_name}")
        self.session = None
        self._completed = None
        self.state = ReceiverState.IDLE

    # === Internals ===

    def _confirm_completed(self) -> bool:
        if self._completed is None or not self.channel_attached:
            return False
        file_id, total_chunks = self._completed
        logger.info(f"Confirming completed file {file_id[:8]} to the sender")
        return self._send_resume(ResumeRequest(file_id=file_id,
                                               last_received_chunk=total_chunks - 1))

    def _send_resume(self, request: ResumeRequest) -> bool:
        try:
            self._send_frame(encode_message(request))
        except Exception as e:
            self._report(TransferError(f"Could not send resume request: {e}", request.file_id))
            return False
        return True

    def _send_ack(self, file_id: str, index: int):
        try:
            self._send_frame(encode_message(ChunkAck(file_id=file_id, index=index)))
        except Exception as e:
            if self.session is not None:
                self.state = ReceiverState.PAUSED
            logger.warning(f"Ack for chunk {index} failed: {e}")
            self._report(TransferError(f"Ack for chunk {index} failed: {e}", file_id))

    def _complete(self):
        session = self.session
        data = assemble_chunks(session.chunk_buffer[i] for i in range(session.total_chunks))
        self.session = None

        if len(data) != session.size:
            self.state = ReceiverState.IDLE
            self._report(TransferError(
                f"{session.file_name}: assembled {len(data)} bytes, expected {session.size}",
                session.file_id,
            ))
            return
        if session.sha256 and hashlib.sha256(data).hexdigest() != session.sha256:
            self.state = ReceiverState.IDLE
            self._report(TransferError(f"{session.file_name}: checksum mismatch", session.file_id))
            return

        self.state = ReceiverState.COMPLETE
        if session.total_chunks:
            self._completed = (session.file_id, session.total_chunks)
        self.files_received += 1
        logger.info(f"Received {session.file_name} ({session.size:,} bytes)")
        session.chunk_buffer = {}
        self._emit_progress(session)
        if self.on_complete:
            self.on_complete(session, data)

    def get_stats(self) -> dict:
        """Get receiver statistics."""
        return {
            'state': self.state.value,
            'chunks_accepted': self.chunks_accepted,
            'chunks_rejected': self.chunks_rejected,
            'files_received': self.files_received,
        }
