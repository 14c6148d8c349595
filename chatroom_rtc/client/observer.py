"""Change notifications from a RoomSession to the UI layer."""

import logging
from typing import TYPE_CHECKING, List, Sequence

if TYPE_CHECKING:
    from chatroom_rtc.client.message_relay import ChatMessage
    from chatroom_rtc.client.presence_tracker import Participant
    from chatroom_rtc.mesh.peer_link import PeerLink

logger = logging.getLogger(__name__)


class SessionObserver:
    """Base class for RoomSession observers.

    Override only the callbacks you care about; the defaults do nothing.
    Callbacks run on the event loop and must not block.
    """

    def on_connection_changed(self, connected: bool) -> None:
        pass

    def on_roster_changed(self, participants: Sequence["Participant"]) -> None:
        pass

    def on_typing_changed(self, user_ids: frozenset) -> None:
        pass

    def on_message(self, message: "ChatMessage") -> None:
        pass

    def on_peer_changed(self, link: "PeerLink") -> None:
        pass

    def on_peer_removed(self, peer_id: str) -> None:
        pass

    def on_local_media_changed(self, video_on: bool, audio_on: bool) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_session_closed(self) -> None:
        pass


class ObserverHub:
    """Fans a notification out to every registered SessionObserver."""

    def __init__(self):
        self._observers: List[SessionObserver] = []

    def add(self, observer: SessionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove(self, observer: SessionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def notify(self, callback: str, *args) -> None:
        """Invoke ``callback`` on every observer.

        An observer that raises is logged and skipped so the remaining
        observers still see the change.
        """
        for observer in list(self._observers):
            try:
                getattr(observer, callback)(*args)
            except Exception as e:
                logger.error(f"Observer {observer!r} failed in {callback}: {e}")
