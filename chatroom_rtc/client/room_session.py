"""RoomSession: binds a local identity to a room and wires the components.

A session owns its own SignalingChannel, created by enter() and closed by
leave(). All relay events reach the session through one dispatcher, which
parses them into typed variants and routes them to the presence tracker,
the message relay or the peer mesh.

Negotiation work is spawned as tasks so the channel's reader is never
blocked by description creation; the mesh's per-peer locks keep events for
one peer in delivery order.
"""

import asyncio
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Union

from aiortc import RTCPeerConnection

from chatroom_rtc.client.media import LocalMedia
from chatroom_rtc.client.message_relay import Attachment, MessageRelay, Timeline
from chatroom_rtc.client.observer import ObserverHub, SessionObserver
from chatroom_rtc.client.presence_tracker import Participant, PresenceTracker
from chatroom_rtc.client.signaling_channel import SignalingChannel
from chatroom_rtc.config import Config, get_config
from chatroom_rtc.exceptions import ChatroomRTCError, NotConnectedError, ProtocolError
from chatroom_rtc.mesh.peer_link import PeerLink
from chatroom_rtc.mesh.peer_mesh import PeerMeshManager
from chatroom_rtc.protocol import (
    EVT_CONNECTED,
    EVT_DISCONNECTED,
    EVT_JOIN_CALL,
    EVT_LEAVE_CALL,
    EVT_USER_JOINED,
    EVT_USER_JOINED_CALL,
    EVT_WEBRTC_OFFER,
    INBOUND_EVENTS,
    CallMembership,
    IceCandidate,
    MediaState,
    NewMessage,
    RelayError,
    RosterSnapshot,
    SessionDescription,
    UserTyping,
    parse_event,
)

logger = logging.getLogger(__name__)


class RoomSession:
    """One participant's membership of one room.

    Attributes:
        room_id: Active room, or None outside a room.
        user_id: Local identity, or None outside a room.
        in_call: Whether this participant takes part in the call.
        is_connected: Connectivity flag, updated on connected/disconnected.
        timeline: Chat timeline of the active room.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        local_media: Optional[LocalMedia] = None,
        connection_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        connect_fn: Optional[Callable] = None,
    ):
        """Initialize a session without connecting.

        Args:
            config: Configuration. Defaults to the global configuration.
            local_media: Local capture for the first enter(). It is stopped by
                leave(), so later enters open the devices in ``config.media``.
                Defaults to those devices on every enter().
            connection_factory: Builds peer connections (for tests).
            connect_fn: Opens the relay websocket (for tests).
        """
        self.config = config or get_config()
        self.hub = ObserverHub()
        self.timeline = Timeline(self.hub)

        self._local_media_override = local_media
        self._connection_factory = connection_factory
        self._connect_fn = connect_fn

        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.in_call = False
        self.is_connected = False

        self.local_media: Optional[LocalMedia] = None
        self.channel: Optional[SignalingChannel] = None
        self.presence: Optional[PresenceTracker] = None
        self.messages: Optional[MessageRelay] = None
        self.mesh: Optional[PeerMeshManager] = None

        self._handlers: Dict[str, Callable] = {}
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Observers and read-only views
    # -------------------------------------------------------------------------

    def add_observer(self, observer: SessionObserver) -> None:
        self.hub.add(observer)

    def remove_observer(self, observer: SessionObserver) -> None:
        self.hub.remove(observer)

    @property
    def is_active(self) -> bool:
        return self.channel is not None

    @property
    def roster(self) -> List[str]:
        return self.presence.roster if self.presence else []

    @property
    def participants(self) -> List[Participant]:
        return self.presence.participants if self.presence else []

    @property
    def peers(self) -> Dict[str, PeerLink]:
        return dict(self.mesh.links) if self.mesh else {}

    def _require_active(self) -> None:
        if self.channel is None:
            raise NotConnectedError("Not in a room")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def enter(
        self, room_id: str, user_id: str, join_call: bool = True
    ) -> RosterSnapshot:
        """Connect to the relay, join ``room_id`` and optionally the call.

        Returns:
            The room-joined snapshot.

        Raises:
            ChatroomRTCError: If the session is already in a room.
            SignalingError: If the relay does not confirm the join in time.
            OSError: If the relay cannot be reached.
        """
        if self.channel is not None:
            raise ChatroomRTCError(f"Session is already in room {self.room_id}")

        self.room_id = room_id
        self.user_id = user_id
        self.in_call = join_call

        media_config = self.config.media
        self.local_media = self._local_media_override or LocalMedia.from_devices(
            video_device=media_config.video_device,
            audio_device=media_config.audio_device,
            media_format=media_config.media_format,
        )

        self.channel = SignalingChannel(
            self.config.signaling_websocket,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            reconnect_delay=self.config.reconnect_delay,
            connect_fn=self._connect_fn,
        )
        self.presence = PresenceTracker(
            self.channel, self.hub, self.timeline, join_timeout=self.config.join_timeout
        )
        self.messages = MessageRelay(self.channel, self.timeline)
        self.messages.room_id = room_id
        self.messages.user_id = user_id
        self.mesh = PeerMeshManager(
            self.channel,
            self.hub,
            self.local_media,
            ice_servers=self.config.get_ice_servers(),
            connection_factory=self._connection_factory,
        )
        self.mesh.bind(room_id, user_id)
        self._subscribe()

        try:
            await self.channel.connect()
            snapshot = await self.presence.join(room_id, user_id)
            if join_call:
                await self._join_call()
        except BaseException:
            await self._teardown(send_leave=False)
            raise

        logger.info(
            f"Entered room {room_id} as {user_id} with {len(snapshot.users)} member(s)"
        )
        return snapshot

    async def rejoin(self) -> RosterSnapshot:
        """Re-enter the active room after the channel reconnected.

        The relay forgot us when the old socket dropped, so existing peer
        links are closed and the other members call us again.

        Raises:
            NotConnectedError: If not in a room or the channel is still down.
        """
        self._require_active()
        if not self.channel.is_connected:
            raise NotConnectedError("Cannot rejoin while disconnected from relay")

        logger.info(f"Rejoining room {self.room_id}")
        await self.mesh.close_all()
        snapshot = await self.presence.join(self.room_id, self.user_id)
        if self.in_call:
            await self._join_call()
        return snapshot

    async def leave(self) -> None:
        """Leave the room and release everything the session holds.

        Local tracks are stopped, every peer connection is closed and the
        roster, typing state and timeline are cleared. Observers hear about
        it once teardown has finished.
        """
        if self.channel is None:
            return
        logger.info(f"Leaving room {self.room_id}")
        await self._teardown(send_leave=True)

    async def _teardown(self, send_leave: bool) -> None:
        channel = self.channel
        self._unsubscribe()

        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if send_leave and channel is not None and channel.is_connected:
            if self.in_call:
                try:
                    await channel.send(
                        EVT_LEAVE_CALL, {"roomId": self.room_id, "userId": self.user_id}
                    )
                except NotConnectedError as e:
                    logger.warning(f"Failed to send leave-call: {e}")
            await self.presence.leave(self.room_id, self.user_id)

        if self.local_media is not None:
            self.local_media.stop()
            if self.local_media is self._local_media_override:
                self._local_media_override = None
        if self.mesh is not None:
            await self.mesh.close_all(notify=False)
        if self.presence is not None:
            self.presence.clear()
        self.timeline.clear()
        if channel is not None:
            await channel.close()

        self.channel = None
        self.presence = None
        self.messages = None
        self.mesh = None
        self.local_media = None
        self.room_id = None
        self.user_id = None
        self.in_call = False
        self.is_connected = False

        self.hub.notify("on_roster_changed", [])
        self.hub.notify("on_connection_changed", False)
        self.hub.notify("on_session_closed")

    async def _join_call(self) -> None:
        await self.channel.send(
            EVT_JOIN_CALL, {"roomId": self.room_id, "userId": self.user_id}
        )
        await self.mesh.broadcast_media_state()

    # -------------------------------------------------------------------------
    # Local actions
    # -------------------------------------------------------------------------

    async def send_text(self, text: str) -> bool:
        self._require_active()
        return await self.messages.send_text(self.room_id, self.user_id, text)

    async def send_file(self, attachment: Union[Attachment, str, Path]) -> bool:
        """Send a file to the room.

        Args:
            attachment: An Attachment, or a path to read one from.

        Raises:
            FileTooLargeError: If the file is over the size limit.
            FileReadError: If the file cannot be read.
        """
        self._require_active()
        if not isinstance(attachment, Attachment):
            attachment = Attachment.from_path(attachment)
        return await self.messages.send_file(self.room_id, self.user_id, attachment)

    async def set_typing(self, is_typing: bool) -> None:
        self._require_active()
        await self.messages.set_typing(self.room_id, self.user_id, is_typing)

    async def toggle_video(self) -> bool:
        """Flip the local video flag and broadcast both flags.

        Returns:
            The new video flag.
        """
        self._require_active()
        self.local_media.set_video(not self.local_media.video_enabled)
        await self._media_changed()
        return self.local_media.video_enabled

    async def toggle_audio(self) -> bool:
        """Flip the local audio flag and broadcast both flags.

        Returns:
            The new audio flag.
        """
        self._require_active()
        self.local_media.set_audio(not self.local_media.audio_enabled)
        await self._media_changed()
        return self.local_media.audio_enabled

    async def _media_changed(self) -> None:
        self.hub.notify(
            "on_local_media_changed",
            self.local_media.video_enabled,
            self.local_media.audio_enabled,
        )
        await self.mesh.broadcast_media_state()

    async def wait_idle(self) -> None:
        """Wait until all spawned negotiation tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    def _subscribe(self) -> None:
        for event in INBOUND_EVENTS + (EVT_CONNECTED, EVT_DISCONNECTED):
            handler = functools.partial(self._dispatch, event)
            self._handlers[event] = handler
            self.channel.subscribe(event, handler)

    def _unsubscribe(self) -> None:
        if self.channel is not None:
            for event, handler in self._handlers.items():
                self.channel.unsubscribe(event, handler)
        self._handlers.clear()

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _is_addressed_to_me(self, event: Union[SessionDescription, IceCandidate]) -> bool:
        return event.to_user_id == self.user_id and event.room_id == self.room_id

    def _dispatch(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Single entry point for every event the channel delivers."""
        if event_name == EVT_CONNECTED:
            self.is_connected = True
            self.hub.notify("on_connection_changed", True)
            return
        if event_name == EVT_DISCONNECTED:
            self.is_connected = False
            logger.warning("Lost connection to relay")
            self.hub.notify("on_connection_changed", False)
            return

        try:
            event = parse_event(event_name, payload)
        except ProtocolError as e:
            logger.error(f"Dropping malformed {event_name}: {e}")
            return
        if event is None:
            return

        if isinstance(event, RosterSnapshot):
            self._on_roster(event)
        elif isinstance(event, NewMessage):
            self.messages.handle_new_message(event)
        elif isinstance(event, UserTyping):
            self.presence.handle_typing(event)
        elif isinstance(event, MediaState):
            if event.user_id != self.user_id:
                self.presence.apply_media_state(event)
                self.mesh.apply_media_state(event)
        elif isinstance(event, CallMembership):
            self._on_call_membership(event)
        elif isinstance(event, (SessionDescription, IceCandidate)):
            self._on_signaling(event)
        elif isinstance(event, RelayError):
            logger.error(f"Relay error: {event.message}")
            self.hub.notify("on_error", event.message)

    def _on_roster(self, snapshot: RosterSnapshot) -> None:
        added, removed = self.presence.apply_snapshot(snapshot)

        for peer_id in removed:
            self._spawn(self.mesh.remove_peer(peer_id))

        # Newcomers are called once their user-joined-call arrives; a chat-only
        # member never sends one and never gets a PeerLink.
        if snapshot.event == EVT_USER_JOINED and added:
            logger.debug(f"Waiting for {added} to join the call before offering")

    def _on_call_membership(self, event: CallMembership) -> None:
        if event.room_id != self.room_id or event.user_id == self.user_id:
            return

        if event.event == EVT_USER_JOINED_CALL:
            if self.in_call:
                self._spawn(self._call_and_broadcast(event.user_id))
        else:
            self._spawn(self.mesh.remove_peer(event.user_id))

    async def _call_and_broadcast(self, peer_id: str) -> None:
        await self.mesh.call(peer_id)
        await self.mesh.broadcast_media_state()

    def _on_signaling(self, event: Union[SessionDescription, IceCandidate]) -> None:
        if not self._is_addressed_to_me(event):
            logger.debug(
                f"Ignoring signaling for {event.to_user_id} in room {event.room_id}"
            )
            return
        if not self.in_call:
            logger.debug(f"Ignoring signaling from {event.from_user_id}: not in call")
            return

        if isinstance(event, IceCandidate):
            self._spawn(self.mesh.handle_ice_candidate(event))
        elif event.event == EVT_WEBRTC_OFFER:
            self._spawn(self.mesh.handle_offer(event))
        else:
            self._spawn(self.mesh.handle_answer(event))
