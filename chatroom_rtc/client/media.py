"""Local audio/video capture shared by every peer connection.

One capture per session. Each PeerLink gets its own MediaRelay subscription
of the same gated tracks, so switching video or audio off applies to every
peer at once. A disabled track keeps producing frames (black video, silent
audio) so the outgoing RTP stream is never interrupted.
"""

import logging
from typing import List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

logger = logging.getLogger(__name__)


def blank_video_frame(frame: av.VideoFrame) -> av.VideoFrame:
    """Return a black frame with the same geometry and timing as ``frame``."""
    blank = av.VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def silent_audio_frame(frame: av.AudioFrame) -> av.AudioFrame:
    """Return a silent s16 frame with the same layout and timing as ``frame``."""
    channels = len(frame.layout.channels)
    silent = av.AudioFrame.from_ndarray(
        np.zeros((1, frame.samples * channels), dtype=np.int16),
        format="s16",
        layout=frame.layout.name,
    )
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


class ToggleableTrack(MediaStreamTrack):
    """Wraps a capture track and blanks its frames while disabled."""

    def __init__(self, source: MediaStreamTrack, enabled: bool = False):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return blank_video_frame(frame)
        return silent_audio_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    """Video/audio enablement flags applied to the shared local capture.

    Both flags start off. With no capture device the instance still tracks
    the flags, and the session simply sends no media.

    Attributes:
        video_track: Gated video track, or None without a video device.
        audio_track: Gated audio track, or None without an audio device.
        video_enabled: Local video flag.
        audio_enabled: Local audio flag.
    """

    def __init__(
        self,
        video_source: Optional[MediaStreamTrack] = None,
        audio_source: Optional[MediaStreamTrack] = None,
    ):
        self.video_track = ToggleableTrack(video_source) if video_source else None
        self.audio_track = ToggleableTrack(audio_source) if audio_source else None
        self.video_enabled = False
        self.audio_enabled = False
        self._relay = MediaRelay()

    @classmethod
    def from_devices(
        cls,
        video_device: Optional[str] = None,
        audio_device: Optional[str] = None,
        media_format: Optional[str] = None,
    ) -> "LocalMedia":
        """Open capture devices with aiortc's MediaPlayer.

        Args:
            video_device: Device or file for video (e.g. "/dev/video0").
            audio_device: Device or file for audio. May equal ``video_device``.
            media_format: Optional input format (e.g. "v4l2", "avfoundation").
        """
        video_source = None
        audio_source = None

        if video_device:
            player = MediaPlayer(video_device, format=media_format)
            video_source = player.video
            if audio_device == video_device:
                audio_source = player.audio
            logger.info(f"Opened video capture {video_device}")

        if audio_device and audio_source is None:
            player = MediaPlayer(audio_device, format=media_format)
            audio_source = player.audio
            logger.info(f"Opened audio capture {audio_device}")

        return cls(video_source=video_source, audio_source=audio_source)

    @property
    def has_capture(self) -> bool:
        return self.video_track is not None or self.audio_track is not None

    def set_video(self, enabled: bool) -> None:
        self.video_enabled = enabled
        if self.video_track is not None:
            self.video_track.enabled = enabled

    def set_audio(self, enabled: bool) -> None:
        self.audio_enabled = enabled
        if self.audio_track is not None:
            self.audio_track.enabled = enabled

    def tracks_for_peer(self) -> List[MediaStreamTrack]:
        """Fresh relay subscriptions of the local tracks for one peer connection."""
        return [
            self._relay.subscribe(track)
            for track in (self.video_track, self.audio_track)
            if track is not None
        ]

    def stop(self) -> None:
        """Stop all local capture."""
        for track in (self.video_track, self.audio_track):
            if track is not None:
                track.stop()
        self.video_enabled = False
        self.audio_enabled = False
        logger.info("Local media stopped")
