"""Full-mesh peer connection manager for a room.

Every participant in the call holds one RTCPeerConnection to every other
participant. Offers, answers and candidates travel through the relay as
addressed events; media flows directly between peers.

Who offers:
- Call members offer to a newcomer when its ``user-joined-call`` arrives.
  ``user-joined`` alone starts nothing, so chat-only members get no PeerLink.
- The newcomer never offers from its initial roster; it answers.

Ordering:
Work for one peer runs under that peer's lock, so offers, answers and
candidates between the same pair are applied in the order they arrived.
Different peers negotiate concurrently.

Glare:
An answer is applied only while a local offer is outstanding
(``signalingState == "have-local-offer"``). Anything else is discarded. An
offer that arrives while our own offer is outstanding fails in
setRemoteDescription and is logged. There is no rollback.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from chatroom_rtc.exceptions import NotConnectedError
from chatroom_rtc.mesh.peer_link import LinkState, PeerLink, RemoteStream
from chatroom_rtc.protocol import (
    EVT_MEDIA_STATE_CHANGE,
    EVT_WEBRTC_ANSWER,
    EVT_WEBRTC_ICE_CANDIDATE,
    EVT_WEBRTC_OFFER,
    IceCandidate,
    MediaState,
    SessionDescription,
)

if TYPE_CHECKING:
    from chatroom_rtc.client.media import LocalMedia
    from chatroom_rtc.client.observer import ObserverHub
    from chatroom_rtc.client.signaling_channel import SignalingChannel
    from chatroom_rtc.config import IceServerConfig

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def parse_candidate(data: Dict[str, Any]) -> RTCIceCandidate:
    """Build an aiortc candidate from its browser-style dict.

    Args:
        data: ``{"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}``
    """
    sdp = data["candidate"]
    if sdp.startswith(CANDIDATE_PREFIX):
        sdp = sdp[len(CANDIDATE_PREFIX) :]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def serialize_candidate(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class PeerMeshManager:
    """Owns one PeerLink per remote participant.

    Attributes:
        links: Remote participant id -> PeerLink. The only peer map.
        room_id: Active room, set by bind().
        user_id: Local identity, set by bind().
    """

    def __init__(
        self,
        channel: "SignalingChannel",
        hub: "ObserverHub",
        local_media: "LocalMedia",
        ice_servers: Optional[Sequence["IceServerConfig"]] = None,
        connection_factory: Optional[Callable[[], RTCPeerConnection]] = None,
    ):
        """Initialize the mesh.

        Args:
            channel: Channel for addressed signaling and media-state broadcasts.
            hub: Observer hub notified of peer changes.
            local_media: Shared local capture attached to every new link.
            ice_servers: STUN/TURN servers for new connections.
            connection_factory: Builds peer connections. Defaults to
                RTCPeerConnection configured with ``ice_servers``.
        """
        self.channel = channel
        self.hub = hub
        self.local_media = local_media
        self.ice_servers = list(ice_servers or [])
        self._connection_factory = connection_factory

        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}
        # Candidates from peers we have no link for yet
        self._orphan_candidates: Dict[str, List[Dict[str, Any]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def bind(self, room_id: str, user_id: str) -> None:
        self.room_id = room_id
        self.user_id = user_id

    def _lock(self, peer_id: str) -> asyncio.Lock:
        lock = self._locks.get(peer_id)
        if lock is None:
            lock = self._locks[peer_id] = asyncio.Lock()
        return lock

    def _create_peer_connection(self) -> RTCPeerConnection:
        """Create an RTCPeerConnection with the configured ICE servers."""
        if self._connection_factory is not None:
            return self._connection_factory()

        if self.ice_servers:
            config = RTCConfiguration(
                iceServers=[server.to_rtc() for server in self.ice_servers]
            )
            logger.debug(
                f"Creating RTCPeerConnection with {len(self.ice_servers)} ICE server(s)"
            )
            return RTCPeerConnection(configuration=config)

        logger.warning("No ICE servers configured, using default RTCPeerConnection")
        return RTCPeerConnection()

    def _get_or_create_link(self, peer_id: str) -> PeerLink:
        link = self.links.get(peer_id)
        if link is not None:
            return link

        pc = self._create_peer_connection()
        link = PeerLink(peer_id=peer_id, pc=pc)
        link.pending_candidates.extend(self._orphan_candidates.pop(peer_id, []))

        # Local tracks are attached once, when the link is created
        for track in self.local_media.tracks_for_peer():
            pc.addTrack(track)

        self._register_handlers(link)
        self.links[peer_id] = link
        logger.info(f"Created peer link to {peer_id}")
        self.hub.notify("on_peer_changed", link)
        return link

    def _register_handlers(self, link: PeerLink) -> None:
        pc = link.pc
        peer_id = link.peer_id

        @pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {peer_id}")
            if link.remote_stream is None:
                link.remote_stream = RemoteStream()
            link.remote_stream.add_track(track)
            self.hub.notify("on_peer_changed", link)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = pc.connectionState
            logger.info(f"Connection to {peer_id} is now {state}")

            # A replaced or removed link must not touch the current one
            if self.links.get(peer_id) is not link:
                return

            if state == "connected":
                link.state = LinkState.CONNECTED
                self.hub.notify("on_peer_changed", link)
            elif state in ("disconnected", "failed"):
                await self.remove_peer(peer_id, expected=link)

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None or self.links.get(peer_id) is not link:
                return
            await self._send_addressed(
                EVT_WEBRTC_ICE_CANDIDATE,
                peer_id,
                {"candidate": serialize_candidate(candidate)},
            )
            logger.debug(f"Sent ICE candidate to {peer_id}")

    async def _send_addressed(
        self, event: str, peer_id: str, payload: Dict[str, Any]
    ) -> None:
        await self.channel.send(
            event,
            {
                "roomId": self.room_id,
                "fromUserId": self.user_id,
                "toUserId": peer_id,
                **payload,
            },
        )

    async def _send_description(self, event: str, link: PeerLink) -> None:
        description = link.pc.localDescription
        await self._send_addressed(
            event,
            link.peer_id,
            {"sdp": {"type": description.type, "sdp": description.sdp}},
        )

    def _sync_state(self, link: PeerLink) -> None:
        # A renegotiation on an established connection fires no state change
        if link.pc.connectionState == "connected":
            link.state = LinkState.CONNECTED
            self.hub.notify("on_peer_changed", link)

    async def _add_candidate(self, link: PeerLink, data: Dict[str, Any]) -> None:
        try:
            await link.pc.addIceCandidate(parse_candidate(data))
            logger.debug(f"Added ICE candidate from {link.peer_id}")
        except Exception as e:
            logger.error(f"Failed to add ICE candidate from {link.peer_id}: {e}")

    async def _drain_candidates(self, link: PeerLink) -> None:
        """Apply queued candidates once, in arrival order."""
        pending, link.pending_candidates = link.pending_candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} queued candidate(s) from {link.peer_id}")
        for data in pending:
            await self._add_candidate(link, data)

    async def call(self, peer_id: str) -> None:
        """Caller path: send an offer to ``peer_id``.

        If an offer to this peer is already outstanding, the same local
        description is sent again instead of starting a second negotiation.
        """
        if peer_id == self.user_id:
            return

        async with self._lock(peer_id):
            link = self._get_or_create_link(peer_id)
            pc = link.pc
            try:
                if pc.signalingState != "have-local-offer":
                    offer = await pc.createOffer()
                    await pc.setLocalDescription(offer)
                else:
                    logger.debug(f"Offer to {peer_id} already outstanding, resending")

                link.state = LinkState.NEGOTIATING
                await self._send_description(EVT_WEBRTC_OFFER, link)
                logger.info(f"Sent offer to {peer_id}")
            except Exception as e:
                logger.error(f"Failed to send offer to {peer_id}: {e}")

    async def handle_offer(self, event: SessionDescription) -> None:
        """Callee path: answer an offer, then broadcast our media flags."""
        peer_id = event.from_user_id
        logger.info(f"Received offer from {peer_id}")

        async with self._lock(peer_id):
            link = self._get_or_create_link(peer_id)
            pc = link.pc

            remote = pc.remoteDescription
            if (
                remote is not None
                and remote.sdp == event.sdp
                and pc.signalingState == "stable"
            ):
                logger.debug(f"Duplicate offer from {peer_id} ignored")
                return

            try:
                link.state = LinkState.NEGOTIATING
                await pc.setRemoteDescription(
                    RTCSessionDescription(sdp=event.sdp, type=event.sdp_type)
                )
                await self._drain_candidates(link)

                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
                await self._send_description(EVT_WEBRTC_ANSWER, link)
                logger.info(f"Sent answer to {peer_id}")
            except Exception as e:
                logger.error(f"Failed to handle offer from {peer_id}: {e}")
                return

            self._sync_state(link)

        await self.broadcast_media_state()

    async def handle_answer(self, event: SessionDescription) -> None:
        """Apply an answer if, and only if, a local offer is outstanding."""
        peer_id = event.from_user_id

        async with self._lock(peer_id):
            link = self.links.get(peer_id)
            if link is None:
                logger.warning(f"Received answer from {peer_id} with no peer link")
                return

            pc = link.pc
            if pc.signalingState != "have-local-offer":
                logger.warning(
                    f"Discarding answer from {peer_id}: no outstanding offer "
                    f"(signaling state {pc.signalingState})"
                )
                return

            try:
                await pc.setRemoteDescription(
                    RTCSessionDescription(sdp=event.sdp, type=event.sdp_type)
                )
                logger.info(f"Applied answer from {peer_id}")
                await self._drain_candidates(link)
            except Exception as e:
                logger.error(f"Failed to apply answer from {peer_id}: {e}")
                return

            self._sync_state(link)

    async def handle_ice_candidate(self, event: IceCandidate) -> None:
        """Apply a remote candidate now, or queue it until a remote description exists."""
        peer_id = event.from_user_id
        data = event.candidate
        if not data or not data.get("candidate"):
            logger.debug(f"End of candidates from {peer_id}")
            return

        async with self._lock(peer_id):
            link = self.links.get(peer_id)
            if link is None:
                self._orphan_candidates.setdefault(peer_id, []).append(data)
                logger.debug(f"Buffered ICE candidate from {peer_id} (no link yet)")
                return

            if not link.has_remote_description:
                link.pending_candidates.append(data)
                logger.debug(f"Queued ICE candidate from {peer_id}")
                return

            await self._add_candidate(link, data)

    def apply_media_state(self, event: MediaState) -> None:
        link = self.links.get(event.user_id)
        if link is None:
            return
        link.video_on = event.is_video_on
        link.audio_on = event.is_audio_on
        self.hub.notify("on_peer_changed", link)

    async def broadcast_media_state(self) -> None:
        """Send the local video/audio pair to the room."""
        if not self.channel.is_connected or self.room_id is None:
            return
        try:
            await self.channel.send(
                EVT_MEDIA_STATE_CHANGE,
                {
                    "roomId": self.room_id,
                    "userId": self.user_id,
                    "isVideoOn": self.local_media.video_enabled,
                    "isAudioOn": self.local_media.audio_enabled,
                },
            )
        except NotConnectedError as e:
            logger.warning(f"Media state not broadcast: {e}")

    async def remove_peer(
        self, peer_id: str, expected: Optional[PeerLink] = None, notify: bool = True
    ) -> bool:
        """Tear down the link to ``peer_id``.

        Args:
            peer_id: Remote participant id.
            expected: Only remove if the current link is this one.
            notify: Whether to tell observers about the removal.

        Returns:
            True if a link was torn down, False if there was nothing to remove.
        """
        self._orphan_candidates.pop(peer_id, None)

        link = self.links.get(peer_id)
        if link is None or (expected is not None and link is not expected):
            return False

        # Unmap before awaiting so a concurrent removal sees nothing to do
        del self.links[peer_id]
        link.state = LinkState.CLOSED
        link.pending_candidates.clear()

        try:
            await link.pc.close()
        except Exception as e:
            logger.warning(f"Error closing connection to {peer_id}: {e}")
        if link.remote_stream is not None:
            link.remote_stream.stop()

        logger.info(f"Removed peer link to {peer_id}")
        if notify:
            self.hub.notify("on_peer_removed", peer_id)
        return True

    async def close_all(self, notify: bool = True) -> None:
        """Tear down every link and forget queued candidates."""
        for peer_id in list(self.links):
            await self.remove_peer(peer_id, notify=notify)
        self._orphan_candidates.clear()
        self._locks.clear()
