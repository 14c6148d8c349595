"""chatroom-rtc: ephemeral chat rooms with a full-mesh WebRTC call.

Subpackages:
- client: signaling channel, presence, chat messages, local media and the
  RoomSession orchestrator
- mesh: per-peer negotiation state machines
"""

__version__ = "0.1.0"
