"""
Transfer Manager

Owns one sender and one receiver for the direct channel between two
endpoints and routes every incoming frame to the right role.

The manager outlives any single data channel: when a channel closes both
roles pause and keep their sessions, and when a new channel opens the
receiver asks the sender to resume from its last accepted chunk.

Simultaneous starts: only one transfer may be active on a channel. If
FILE_META arrives while this endpoint is itself sending, the initiator's
transfer wins. The initiator ignores the incoming metadata; the joiner
cancels its own outgoing session and accepts the incoming one.
"""

import logging
from typing import Callable, Dict, Optional

from .chunker import CHUNK_SIZE
from .messages import DataMessageType, FileMeta, decode_message
from .receiver import TransferReceiver, ReceiverCompleteCallback
from .sender import TransferSender, SenderCompleteCallback
from .session import TransferSession, ProgressCallback, ErrorCallback, SendFunction
from ..errors import ProtocolError, TransferError
from ..signaling.messages import check_handler_table

logger = logging.getLogger(__name__)


class TransferManager:
    """Dispatches direct-channel frames to the sender and receiver roles."""

    def __init__(self, chunk_size: int = CHUNK_SIZE,
                 ack_timeout: Optional[float] = None,
                 max_retries: int = 3,
                 auto_resume: bool = True,
                 is_initiator: Callable[[], bool] = lambda: False,
                 on_progress: Optional[ProgressCallback] = None,
                 on_sent: Optional[SenderCompleteCallback] = None,
                 on_received: Optional[ReceiverCompleteCallback] = None,
                 on_error: Optional[ErrorCallback] = None):
        self.auto_resume = auto_resume
        self._is_initiator = is_initiator
        self.on_error = on_error

        self.sender = TransferSender(
            chunk_size=chunk_size,
            ack_timeout=ack_timeout,
            max_retries=max_retries,
            on_progress=on_progress,
            on_complete=on_sent,
            on_error=on_error,
        )
        self.receiver = TransferReceiver(
            on_progress=on_progress,
            on_complete=on_received,
            on_error=on_error,
        )

        self._handlers: Dict[DataMessageType, Callable] = {
            DataMessageType.FILE_META: self._handle_meta,
            DataMessageType.FILE_CHUNK: self.receiver.handle_chunk,
            DataMessageType.CHUNK_ACK: self.sender.handle_ack,
            DataMessageType.RESUME_REQUEST: self.sender.handle_resume,
        }
        check_handler_table(self._handlers, DataMessageType)

    @property
    def is_busy(self) -> bool:
        """True while either role holds a session."""
        return self.sender.is_active or self.receiver.is_active

    # === Channel lifecycle ===

    def channel_opened(self, send: SendFunction):
        """A direct channel is open: route outgoing frames through `send`."""
        self.sender.attach(send)
        self.receiver.attach(send)
        if self.auto_resume:
            self.receiver.resume()

    def channel_closed(self):
        """The direct channel closed: pause both roles."""
        self.sender.channel_closed()
        self.receiver.channel_closed()

    def handle_frame(self, raw):
        """Process one frame from the direct channel."""
        try:
            message = decode_message(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping data channel message: {e}")
            return
        self._handlers[message.type](message)

    # === User actions ===

    def send_file(self, file_name: str, data: bytes, mime_type: str = '',
                  file_id: Optional[str] = None) -> TransferSession:
        """
        Start sending a file.

        Raises:
            TransferError: if a transfer is already active on this channel
        """
        if self.receiver.is_active:
            raise TransferError(
                f"Busy receiving {self.receiver.session.file_name}",
                self.receiver.session.file_id,
            )
        return self.sender.start(file_name, data, mime_type, file_id)

    def resume(self) -> bool:
        """Manual resume: retry the current chunk or re-request from the receiver side."""
        return self.sender.retry() or self.receiver.resume()

    def cancel(self):
        """Discard every session; partial data is dropped."""
        self.sender.cancel()
        self.receiver.cancel()

    # === Handlers ===

    def _handle_meta(self, meta: FileMeta):
        if self.sender.is_active:
            if self._is_initiator():
                logger.warning(f"Ignoring FILE_META for {meta.name}: our own transfer has priority")
                self._report(TransferError(
                    f"Peer tried to send {meta.name} while we are sending", meta.file_id
                ))
                return

            outgoing = self.sender.session
            logger.warning(f"Peer started {meta.name} concurrently, "
                           f"cancelling our transfer of {outgoing.file_name}")
            self.sender.cancel()
            self._report(TransferError(
                f"Sending {outgoing.file_name} cancelled: peer started a transfer first",
                outgoing.file_id,
            ))

        self.receiver.handle_meta(meta)

    def _report(self, error: Exception):
        if self.on_error:
            self.on_error(error)

    def get_stats(self) -> dict:
        return {
            'sender': self.sender.get_stats(),
            'receiver': self.receiver.get_stats(),
        }
