"""Client side of a chat room.

This module provides:
- signaling_channel: websocket transport to the relay with bounded reconnects
- presence_tracker: roster, typing indicators and per-participant media flags
- message_relay: text and file messages and the chat timeline
- media: shared local capture with video/audio enablement
- observer: change notifications for the UI layer
- room_session: the RoomSession orchestrator
"""

from chatroom_rtc.client.media import LocalMedia, ToggleableTrack
from chatroom_rtc.client.message_relay import (
    MAX_FILE_SIZE,
    Attachment,
    ChatMessage,
    MessageRelay,
    Timeline,
)
from chatroom_rtc.client.observer import ObserverHub, SessionObserver
from chatroom_rtc.client.presence_tracker import Participant, PresenceTracker
from chatroom_rtc.client.room_session import RoomSession
from chatroom_rtc.client.signaling_channel import SignalingChannel

__all__ = [
    # Transport
    "SignalingChannel",
    # Presence
    "Participant",
    "PresenceTracker",
    # Chat
    "MAX_FILE_SIZE",
    "Attachment",
    "ChatMessage",
    "MessageRelay",
    "Timeline",
    # Media
    "LocalMedia",
    "ToggleableTrack",
    # Session
    "ObserverHub",
    "SessionObserver",
    "RoomSession",
]
