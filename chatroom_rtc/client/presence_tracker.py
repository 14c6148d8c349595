"""Room roster, typing indicators and per-participant media flags."""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from chatroom_rtc.exceptions import SignalingError
from chatroom_rtc.identity import display_name, user_color
from chatroom_rtc.protocol import (
    EVT_JOIN_ROOM,
    EVT_LEAVE_ROOM,
    EVT_ROOM_JOINED,
    EVT_USER_JOINED,
    EVT_USER_LEFT,
    MediaState,
    RosterSnapshot,
    UserTyping,
)

if TYPE_CHECKING:
    from chatroom_rtc.client.message_relay import Timeline
    from chatroom_rtc.client.observer import ObserverHub
    from chatroom_rtc.client.signaling_channel import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Participant:
    """A room member as seen by this client.

    Name and color are derived from the id, never stored separately.
    """

    id: str
    name: str
    color: str
    online: bool = True
    video_on: bool = False
    audio_on: bool = False

    @classmethod
    def from_id(cls, user_id: str, **flags) -> "Participant":
        return cls(id=user_id, name=display_name(user_id), color=user_color(user_id), **flags)


class PresenceTracker:
    """Keeps the roster equal to the latest relay snapshot.

    Every ``room-joined``, ``user-joined`` and ``user-left`` replaces the
    roster wholesale. Media flags survive a snapshot for members that are
    still present and default to off for new ones.

    Attributes:
        room_id: Active room, or None outside a room.
        user_id: Local identity, or None outside a room.
        join_timeout: Seconds to wait for ``room-joined`` after ``join-room``.
    """

    def __init__(
        self,
        channel: "SignalingChannel",
        hub: "ObserverHub",
        timeline: "Timeline",
        join_timeout: float = 10.0,
    ):
        self.channel = channel
        self.hub = hub
        self.timeline = timeline
        self.join_timeout = join_timeout

        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self._participants: Dict[str, Participant] = {}
        self._typing: Set[str] = set()
        self._join_waiter: Optional[asyncio.Future] = None

    @property
    def roster(self) -> List[str]:
        """Member ids in snapshot order."""
        return list(self._participants)

    @property
    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    @property
    def typing_users(self) -> frozenset:
        """Ids currently typing, never including the local identity."""
        return frozenset(self._typing - {self.user_id})

    def get(self, user_id: str) -> Optional[Participant]:
        return self._participants.get(user_id)

    async def join(self, room_id: str, user_id: str) -> RosterSnapshot:
        """Send ``join-room`` and wait for the matching ``room-joined``.

        Returns:
            The room-joined snapshot.

        Raises:
            SignalingError: If no snapshot arrives within ``join_timeout``.
            NotConnectedError: If the channel is not connected.
        """
        self.room_id = room_id
        self.user_id = user_id

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._join_waiter = waiter

        logger.info(f"Joining room {room_id} as {user_id}")
        try:
            await self.channel.send(EVT_JOIN_ROOM, {"roomId": room_id, "userId": user_id})
            return await asyncio.wait_for(waiter, timeout=self.join_timeout)
        except asyncio.TimeoutError as e:
            raise SignalingError(
                f"Timed out after {self.join_timeout}s waiting to join room {room_id}"
            ) from e
        finally:
            if self._join_waiter is waiter:
                self._join_waiter = None

    async def leave(self, room_id: str, user_id: str) -> None:
        """Send ``leave-room`` if connected, then forget all room state."""
        if self.channel.is_connected:
            try:
                await self.channel.send(
                    EVT_LEAVE_ROOM, {"roomId": room_id, "userId": user_id}
                )
            except Exception as e:
                logger.warning(f"Failed to send leave-room: {e}")
        self.clear()

    def clear(self) -> None:
        self._participants.clear()
        self._typing.clear()
        if self._join_waiter is not None and not self._join_waiter.done():
            self._join_waiter.cancel()
        self._join_waiter = None

    def apply_snapshot(self, snapshot: RosterSnapshot) -> Tuple[List[str], List[str]]:
        """Replace the roster with a relay snapshot.

        Args:
            snapshot: A room-joined, user-joined or user-left snapshot.

        Returns:
            Tuple of (added ids, removed ids) relative to the previous roster.
        """
        if snapshot.room_id != self.room_id:
            logger.debug(
                f"Ignoring {snapshot.event} for room {snapshot.room_id} "
                f"(active room: {self.room_id})"
            )
            return [], []

        previous = self._participants
        current: Dict[str, Participant] = {}
        for uid in snapshot.users:
            known = previous.get(uid)
            if known is not None:
                current[uid] = replace(known, online=True)
            else:
                current[uid] = Participant.from_id(uid)

        added = [uid for uid in current if uid not in previous]
        removed = [uid for uid in previous if uid not in current]
        self._participants = current

        logger.debug(
            f"{snapshot.event}: roster={list(current)} added={added} removed={removed}"
        )

        if snapshot.user_id != self.user_id:
            if snapshot.event == EVT_USER_JOINED:
                self.timeline.add_system(
                    snapshot.room_id, f"{display_name(snapshot.user_id)} joined the room"
                )
            elif snapshot.event == EVT_USER_LEFT:
                self.timeline.add_system(
                    snapshot.room_id, f"{display_name(snapshot.user_id)} left the room"
                )

        self.hub.notify("on_roster_changed", self.participants)

        if (
            snapshot.event == EVT_ROOM_JOINED
            and self._join_waiter is not None
            and not self._join_waiter.done()
        ):
            self._join_waiter.set_result(snapshot)

        return added, removed

    def handle_typing(self, event: UserTyping) -> None:
        if event.user_id == self.user_id:
            return
        if event.is_typing:
            self._typing.add(event.user_id)
        else:
            self._typing.discard(event.user_id)
        self.hub.notify("on_typing_changed", self.typing_users)

    def apply_media_state(self, event: MediaState) -> bool:
        """Update a participant's media flags.

        Returns:
            True if a participant was updated.
        """
        if event.user_id == self.user_id:
            return False
        known = self._participants.get(event.user_id)
        if known is None:
            logger.debug(f"Media state for unknown participant {event.user_id}")
            return False

        self._participants[event.user_id] = replace(
            known, video_on=event.is_video_on, audio_on=event.is_audio_on
        )
        self.hub.notify("on_roster_changed", self.participants)
        return True
