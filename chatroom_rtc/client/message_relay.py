"""Chat messages: sending text and files, and building the local timeline.

Senders never append to their own timeline. The relay echoes every
``send-message`` back to all members as ``new-message``, and every client,
the sender included, builds its ChatMessage from that echo.
"""

import base64
import binascii
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional, Tuple, Union

from chatroom_rtc.exceptions import FileReadError, FileTooLargeError, NotConnectedError
from chatroom_rtc.protocol import (
    EVT_SEND_MESSAGE,
    EVT_TYPING_START,
    EVT_TYPING_STOP,
    KIND_FILE,
    KIND_SYSTEM,
    KIND_TEXT,
    NewMessage,
)

if TYPE_CHECKING:
    from chatroom_rtc.client.observer import ObserverHub
    from chatroom_rtc.client.signaling_channel import SignalingChannel

logger = logging.getLogger(__name__)

# Attachments above this size are rejected before anything is sent.
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MiB

SYSTEM_SENDER = "system"


@dataclass(frozen=True)
class Attachment:
    """A file carried inside a chat message.

    Attributes:
        name: Original file name.
        mime_type: MIME type, ``application/octet-stream`` when unknown.
        size: Size in bytes.
        payload: Raw file contents.
    """

    name: str
    mime_type: str
    size: int
    payload: bytes

    @classmethod
    def from_bytes(
        cls, name: str, payload: bytes, mime_type: Optional[str] = None
    ) -> "Attachment":
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        return cls(name=name, mime_type=mime_type, size=len(payload), payload=payload)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "Attachment":
        """Read a file from disk into an Attachment.

        The size limit is checked against the file's metadata first, so an
        oversized file is never loaded into memory.

        Raises:
            FileTooLargeError: If the file is larger than MAX_FILE_SIZE.
            FileReadError: If the file cannot be read.
        """
        path = Path(path)
        try:
            size = path.stat().st_size
            if size > MAX_FILE_SIZE:
                raise FileTooLargeError(path.name, size, MAX_FILE_SIZE)
            payload = path.read_bytes()
        except OSError as e:
            raise FileReadError(f"Could not read {path}: {e}") from e
        return cls.from_bytes(path.name, payload)

    def to_wire(self) -> dict:
        """Encode as the ``fileData`` object of a send-message event."""
        return {
            "fileName": self.name,
            "fileType": self.mime_type,
            "fileSize": self.size,
            "data": base64.b64encode(self.payload).decode("ascii"),
        }

    @classmethod
    def from_wire(cls, file_data: dict) -> "Attachment":
        """Decode a ``fileData`` object.

        Raises:
            ValueError: If ``data`` is not valid base64.
            KeyError: If a required key is missing.
        """
        try:
            payload = base64.b64decode(file_data["data"], validate=True)
        except binascii.Error as e:
            raise ValueError(f"Invalid base64 file data: {e}") from e
        return cls(
            name=file_data["fileName"],
            mime_type=file_data.get("fileType") or "application/octet-stream",
            size=int(file_data.get("fileSize", len(payload))),
            payload=payload,
        )


@dataclass(frozen=True)
class ChatMessage:
    """One immutable entry of the chat timeline."""

    id: str
    room_id: str
    sender_id: str
    kind: str
    content: str
    attachment: Optional[Attachment]
    timestamp: datetime
    sent_by_me: bool = False


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


def _parse_timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable message timestamp {value!r}, using now")
    return datetime.now(timezone.utc)


class Timeline:
    """Arrival-ordered list of chat messages for the active room."""

    def __init__(self, hub: Optional["ObserverHub"] = None):
        self._messages: List[ChatMessage] = []
        self._hub = hub

    def append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        if self._hub is not None:
            self._hub.notify("on_message", message)

    def add_system(self, room_id: str, content: str) -> ChatMessage:
        message = ChatMessage(
            id=new_message_id(),
            room_id=room_id,
            sender_id=SYSTEM_SENDER,
            kind=KIND_SYSTEM,
            content=content,
            attachment=None,
            timestamp=datetime.now(timezone.utc),
        )
        self.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))


class MessageRelay:
    """Sends chat events for a room and turns their echoes into ChatMessages.

    Attributes:
        channel: Signaling channel used to send events.
        timeline: Timeline receiving inbound messages.
        room_id: Active room, set by the session on enter.
        user_id: Local identity, set by the session on enter.
    """

    def __init__(self, channel: "SignalingChannel", timeline: Timeline):
        self.channel = channel
        self.timeline = timeline
        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None

    async def send_text(self, room_id: str, user_id: str, text: str) -> bool:
        """Send a text message.

        Args:
            room_id: Room to send to.
            user_id: Local identity.
            text: Message text. Leading and trailing whitespace is removed.

        Returns:
            True if an event was sent. False for empty text or when there is
            no live connection to the relay.
        """
        text = text.strip()
        if not text:
            return False
        if not self.channel.is_connected:
            logger.warning("Not connected to relay, message not sent")
            return False

        try:
            await self.channel.send(
                EVT_SEND_MESSAGE,
                {"roomId": room_id, "userId": user_id, "message": text, "type": KIND_TEXT},
            )
        except NotConnectedError as e:
            logger.warning(f"Message not sent: {e}")
            return False
        return True

    async def send_file(
        self, room_id: str, user_id: str, attachment: Attachment
    ) -> bool:
        """Send a file message.

        Returns:
            True if an event was sent, False when there is no live connection
            to the relay.

        Raises:
            FileTooLargeError: If the attachment exceeds MAX_FILE_SIZE. Nothing
                is sent in that case.
        """
        if attachment.size > MAX_FILE_SIZE:
            raise FileTooLargeError(attachment.name, attachment.size, MAX_FILE_SIZE)
        if not self.channel.is_connected:
            logger.warning(f"Not connected to relay, file {attachment.name} not sent")
            return False

        logger.info(f"Sending file {attachment.name} ({attachment.size} bytes)")
        try:
            await self.channel.send(
                EVT_SEND_MESSAGE,
                {
                    "roomId": room_id,
                    "userId": user_id,
                    "message": attachment.name,
                    "type": KIND_FILE,
                    "fileData": attachment.to_wire(),
                },
            )
        except NotConnectedError as e:
            logger.warning(f"File {attachment.name} not sent: {e}")
            return False
        return True

    async def set_typing(self, room_id: str, user_id: str, is_typing: bool) -> None:
        if not self.channel.is_connected:
            return
        event = EVT_TYPING_START if is_typing else EVT_TYPING_STOP
        await self.channel.send(event, {"roomId": room_id, "userId": user_id})

    def handle_new_message(self, event: NewMessage) -> Optional[ChatMessage]:
        """Append an echoed message to the timeline.

        Returns:
            The new ChatMessage, or None if the message belongs to another room.
        """
        if event.room_id != self.room_id:
            logger.debug(f"Ignoring message for room {event.room_id}")
            return None

        attachment = None
        if event.kind == KIND_FILE and event.file_data:
            try:
                attachment = Attachment.from_wire(event.file_data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping attachment from {event.user_id}: {e}")

        message = ChatMessage(
            id=new_message_id(),
            room_id=event.room_id,
            sender_id=event.user_id,
            kind=event.kind if event.kind in (KIND_TEXT, KIND_FILE) else KIND_TEXT,
            content=event.message,
            attachment=attachment,
            timestamp=_parse_timestamp(event.timestamp),
            sent_by_me=event.user_id == self.user_id,
        )
        self.timeline.append(message)
        return message
