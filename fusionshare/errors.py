"""
Error Taxonomy

Every failure the broker or an endpoint can hit falls into one of four
families. Broker-side errors never escape the broker: they are converted
into an ERROR notification or dropped with a log line.
"""


class FusionShareError(Exception):
    """Base class for all fusionshare errors."""


class ProtocolError(FusionShareError):
    """Malformed or unrecognized message. Dropped and logged, never answered."""


class RoomError(FusionShareError):
    """
    A room operation was refused.

    `message` is the user-facing text sent back in the ERROR notification.
    """
    message = "Room error"

    def __init__(self, message: str = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class RoomNotFound(RoomError):
    message = "Room not found"


class RoomFull(RoomError):
    message = "Room is full"


class SelfJoin(RoomError):
    message = "Cannot join your own room"


class TransportError(FusionShareError):
    """The control connection or the direct channel closed unexpectedly."""


class TransferError(FusionShareError):
    """A transfer could not make progress (bad chunk, failed send, busy peer)."""

    def __init__(self, message: str, file_id: str = None):
        super().__init__(message)
        self.file_id = file_id
