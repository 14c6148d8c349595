"""Relay event protocol for chatroom-rtc.

This module defines the named events exchanged between clients and the room
relay, the JSON envelope they travel in, and typed variants for every event a
client receives.

Envelope
--------

Every event is a single JSON text frame. The event name travels in ``type``
and the payload fields sit next to it::

    {"type": "join-room", "roomId": "R1", "userId": "alice"}

Event Overview
--------------

### Presence (client → relay)

**join-room** / **leave-room**: ``roomId, userId``

### Presence (relay → client)

**room-joined**
    Sent to: the joiner only
    Fields: ``roomId, userId, userCount, users[]``

**user-joined** / **user-left**
    Sent to: the other members of the room
    Fields: ``userId, roomId, userCount, users[]``

Every presence event carries the complete member list. Clients replace their
roster with it rather than patching it.

### Chat

**send-message** (client → relay)
    Fields: ``roomId, userId, message, type (text|file), fileData?``
    ``fileData`` is ``{fileName, fileType, fileSize, data}`` with ``data``
    base64 encoded.

**new-message** (relay → every member, sender included)
    Fields: ``roomId, userId, message, type, fileData?, timestamp``

**typing-start** / **typing-stop** (client → relay): ``roomId, userId``

**user-typing** (relay → others): ``userId, isTyping``

### Call membership and media state

**join-call** / **leave-call** (client → relay): ``roomId, userId``

**user-joined-call** / **user-left-call** (relay → others): ``userId, roomId``

**media-state-change** (client → relay): ``roomId, userId, isVideoOn, isAudioOn``

**user-media-state-changed** (relay → others): ``userId, isVideoOn, isAudioOn``

### Addressed signaling (client ↔ relay ↔ client)

**webrtc-offer** / **webrtc-answer**
    Fields: ``roomId, fromUserId, toUserId, sdp``
    ``sdp`` is ``{"type": "offer"|"answer", "sdp": "..."}``

**webrtc-ice-candidate**
    Fields: ``roomId, fromUserId, toUserId, candidate``
    ``candidate`` is ``{"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}``

The relay forwards addressed events to ``toUserId`` only. Clients still drop
any addressed event whose ``toUserId`` or ``roomId`` does not match their own.

### Errors

**error** (relay → client): ``message``
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from chatroom_rtc.exceptions import ProtocolError

# Presence
EVT_JOIN_ROOM = "join-room"
EVT_ROOM_JOINED = "room-joined"
EVT_USER_JOINED = "user-joined"
EVT_LEAVE_ROOM = "leave-room"
EVT_USER_LEFT = "user-left"

# Chat
EVT_SEND_MESSAGE = "send-message"
EVT_NEW_MESSAGE = "new-message"
EVT_TYPING_START = "typing-start"
EVT_TYPING_STOP = "typing-stop"
EVT_USER_TYPING = "user-typing"

# Call membership and media state
EVT_JOIN_CALL = "join-call"
EVT_LEAVE_CALL = "leave-call"
EVT_USER_JOINED_CALL = "user-joined-call"
EVT_USER_LEFT_CALL = "user-left-call"
EVT_MEDIA_STATE_CHANGE = "media-state-change"
EVT_USER_MEDIA_STATE_CHANGED = "user-media-state-changed"

# Addressed signaling
EVT_WEBRTC_OFFER = "webrtc-offer"
EVT_WEBRTC_ANSWER = "webrtc-answer"
EVT_WEBRTC_ICE_CANDIDATE = "webrtc-ice-candidate"

# Relay errors
EVT_ERROR = "error"

# Channel pseudo-events (never sent over the wire)
EVT_CONNECTED = "connected"
EVT_DISCONNECTED = "disconnected"

# Message kinds
KIND_TEXT = "text"
KIND_FILE = "file"
KIND_SYSTEM = "system"

# Events a client subscribes to
INBOUND_EVENTS = (
    EVT_ROOM_JOINED,
    EVT_USER_JOINED,
    EVT_USER_LEFT,
    EVT_NEW_MESSAGE,
    EVT_USER_TYPING,
    EVT_USER_JOINED_CALL,
    EVT_USER_LEFT_CALL,
    EVT_USER_MEDIA_STATE_CHANGED,
    EVT_WEBRTC_OFFER,
    EVT_WEBRTC_ANSWER,
    EVT_WEBRTC_ICE_CANDIDATE,
    EVT_ERROR,
)


def build_envelope(event: str, payload: Optional[Dict[str, Any]] = None) -> str:
    """Serialize an event and its payload into a JSON envelope.

    Examples:
        >>> build_envelope("join-room", {"roomId": "R1", "userId": "alice"})
        '{"type": "join-room", "roomId": "R1", "userId": "alice"}'
    """
    return json.dumps({"type": event, **(payload or {})})


def parse_envelope(raw: Union[str, bytes]) -> Tuple[str, Dict[str, Any]]:
    """Parse a JSON envelope into (event_name, payload).

    Raises:
        ProtocolError: If the frame is not a JSON object with a string ``type``.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON envelope: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Envelope is missing a string 'type' field")

    payload = dict(data)
    event = payload.pop("type")
    return event, payload


# =============================================================================
# Typed inbound variants
# =============================================================================


@dataclass(frozen=True)
class RosterSnapshot:
    """room-joined, user-joined and user-left all carry a full snapshot."""

    event: str
    room_id: str
    user_id: str
    user_count: int
    users: Tuple[str, ...]


@dataclass(frozen=True)
class NewMessage:
    room_id: str
    user_id: str
    message: str
    kind: str
    timestamp: Optional[str]
    file_data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class UserTyping:
    user_id: str
    is_typing: bool


@dataclass(frozen=True)
class CallMembership:
    """user-joined-call or user-left-call."""

    event: str
    room_id: str
    user_id: str


@dataclass(frozen=True)
class MediaState:
    user_id: str
    is_video_on: bool
    is_audio_on: bool


@dataclass(frozen=True)
class SessionDescription:
    """webrtc-offer or webrtc-answer addressed to one participant."""

    event: str
    room_id: str
    from_user_id: str
    to_user_id: str
    sdp_type: str
    sdp: str


@dataclass(frozen=True)
class IceCandidate:
    room_id: str
    from_user_id: str
    to_user_id: str
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class RelayError:
    message: str


InboundEvent = Union[
    RosterSnapshot,
    NewMessage,
    UserTyping,
    CallMembership,
    MediaState,
    SessionDescription,
    IceCandidate,
    RelayError,
]


def _require(payload: Dict[str, Any], *keys: str):
    missing = [key for key in keys if key not in payload]
    if missing:
        raise ProtocolError(f"Missing field(s): {', '.join(missing)}")
    return [payload[key] for key in keys]


def _parse_sdp(event: str, sdp: Any) -> Tuple[str, str]:
    # Browsers send the RTCSessionDescription object, some clients a bare string.
    default_type = "offer" if event == EVT_WEBRTC_OFFER else "answer"
    if isinstance(sdp, dict):
        if "sdp" not in sdp:
            raise ProtocolError("Session description is missing 'sdp'")
        return sdp.get("type") or default_type, sdp["sdp"]
    if isinstance(sdp, str):
        return default_type, sdp
    raise ProtocolError(f"Unsupported session description: {type(sdp).__name__}")


def parse_event(event: str, payload: Dict[str, Any]) -> Optional[InboundEvent]:
    """Convert an inbound event into its typed variant.

    Args:
        event: Event name from the envelope.
        payload: Remaining envelope fields.

    Returns:
        The typed variant, or None for events a client does not handle.

    Raises:
        ProtocolError: If a required field is missing or malformed.
    """
    if event in (EVT_ROOM_JOINED, EVT_USER_JOINED, EVT_USER_LEFT):
        room_id, user_id, users = _require(payload, "roomId", "userId", "users")
        return RosterSnapshot(
            event=event,
            room_id=room_id,
            user_id=user_id,
            user_count=int(payload.get("userCount", len(users))),
            users=tuple(users),
        )

    if event == EVT_NEW_MESSAGE:
        room_id, user_id, message = _require(payload, "roomId", "userId", "message")
        return NewMessage(
            room_id=room_id,
            user_id=user_id,
            message=message,
            kind=payload.get("type", KIND_TEXT),
            timestamp=payload.get("timestamp"),
            file_data=payload.get("fileData"),
        )

    if event == EVT_USER_TYPING:
        user_id, is_typing = _require(payload, "userId", "isTyping")
        return UserTyping(user_id=user_id, is_typing=bool(is_typing))

    if event in (EVT_USER_JOINED_CALL, EVT_USER_LEFT_CALL):
        room_id, user_id = _require(payload, "roomId", "userId")
        return CallMembership(event=event, room_id=room_id, user_id=user_id)

    if event == EVT_USER_MEDIA_STATE_CHANGED:
        user_id, video, audio = _require(payload, "userId", "isVideoOn", "isAudioOn")
        return MediaState(user_id=user_id, is_video_on=bool(video), is_audio_on=bool(audio))

    if event in (EVT_WEBRTC_OFFER, EVT_WEBRTC_ANSWER):
        room_id, from_id, to_id, sdp = _require(
            payload, "roomId", "fromUserId", "toUserId", "sdp"
        )
        sdp_type, sdp_text = _parse_sdp(event, sdp)
        return SessionDescription(
            event=event,
            room_id=room_id,
            from_user_id=from_id,
            to_user_id=to_id,
            sdp_type=sdp_type,
            sdp=sdp_text,
        )

    if event == EVT_WEBRTC_ICE_CANDIDATE:
        room_id, from_id, to_id, candidate = _require(
            payload, "roomId", "fromUserId", "toUserId", "candidate"
        )
        if isinstance(candidate, str):
            candidate = {"candidate": candidate, "sdpMid": None, "sdpMLineIndex": None}
        return IceCandidate(
            room_id=room_id, from_user_id=from_id, to_user_id=to_id, candidate=candidate
        )

    if event == EVT_ERROR:
        return RelayError(message=str(payload.get("message", "unknown error")))

    return None
