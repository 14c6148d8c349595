"""Exceptions raised by chatroom-rtc."""


class ChatroomRTCError(Exception):
    """Base class for all chatroom-rtc errors."""


class NotConnectedError(ChatroomRTCError):
    """Raised when sending on a signaling channel with no live transport."""


class SignalingError(ChatroomRTCError):
    """Raised when the relay fails to answer a request (e.g. join timeout)."""


class ProtocolError(ChatroomRTCError):
    """Raised when an inbound envelope is missing required fields."""


class FileTooLargeError(ChatroomRTCError):
    """Raised when an attachment exceeds the maximum transmittable size.

    Attributes:
        file_name: Name of the rejected file.
        file_size: Size of the rejected file in bytes.
        max_size: Size limit in bytes.
    """

    def __init__(self, file_name: str, file_size: int, max_size: int):
        self.file_name = file_name
        self.file_size = file_size
        self.max_size = max_size
        super().__init__(
            f"{file_name} is {file_size} bytes, larger than the {max_size} byte limit"
        )


class FileReadError(ChatroomRTCError):
    """Raised when an attachment cannot be read from disk."""
