"""Per-peer negotiation state."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection

logger = logging.getLogger(__name__)


class LinkState(enum.Enum):
    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class RemoteStream:
    """Tracks received from one remote participant."""

    def __init__(self):
        self.tracks: List[MediaStreamTrack] = []

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def _first(self, kind: str) -> Optional[MediaStreamTrack]:
        for track in self.tracks:
            if track.kind == kind:
                return track
        return None

    @property
    def video(self) -> Optional[MediaStreamTrack]:
        return self._first("video")

    @property
    def audio(self) -> Optional[MediaStreamTrack]:
        return self._first("audio")

    def stop(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.debug(f"Error stopping remote {track.kind} track: {e}")


@dataclass
class PeerLink:
    """The connection to one remote participant.

    Attributes:
        peer_id: Remote participant id.
        pc: Underlying peer connection.
        state: Negotiation state.
        remote_stream: Received tracks, None until the first track arrives.
        pending_candidates: Remote candidates received before the remote
            description was set, in arrival order.
        video_on: Last media flags the remote participant broadcast.
        audio_on: See ``video_on``.
    """

    peer_id: str
    pc: RTCPeerConnection
    state: LinkState = LinkState.NEW
    remote_stream: Optional[RemoteStream] = None
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)
    video_on: bool = False
    audio_on: bool = False

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    @property
    def is_closed(self) -> bool:
        return self.state is LinkState.CLOSED
