import asyncio
import logging
import sys
from typing import Callable, Optional

from chatroom_rtc.client.message_relay import ChatMessage
from chatroom_rtc.client.observer import SessionObserver
from chatroom_rtc.client.room_session import RoomSession
from chatroom_rtc.config import get_config
from chatroom_rtc.exceptions import ChatroomRTCError, FileReadError, FileTooLargeError
from chatroom_rtc.identity import display_name, format_file_size, user_id_from_name
from chatroom_rtc.mesh.peer_link import LinkState, PeerLink
from chatroom_rtc.protocol import KIND_FILE, KIND_SYSTEM

CONSOLE_HELP = """Commands:
  /file PATH   send a file (max 10 MB)
  /video       toggle your video
  /audio       toggle your audio
  /who         list room members
  /rejoin      re-enter the room after a reconnect
  /quit        leave the room
Anything else is sent as a chat message."""


def on_off(flag: bool) -> str:
    return "on" if flag else "off"


class ConsoleObserver(SessionObserver):
    """Echoes session changes as plain text lines."""

    def __init__(self, echo: Callable[[str], None] = print):
        self.echo = echo
        self._members: list = []
        self._peer_states: dict = {}

    def on_connection_changed(self, connected: bool) -> None:
        if connected:
            self.echo("* connected to relay")
        else:
            self.echo("* disconnected from relay (type /rejoin once reconnected)")

    def on_roster_changed(self, participants) -> None:
        members = [p.id for p in participants]
        if members != self._members and members:
            self.echo(f"* in the room: {', '.join(p.name for p in participants)}")
        self._members = members

    def on_typing_changed(self, user_ids: frozenset) -> None:
        if user_ids:
            names = ", ".join(sorted(display_name(uid) for uid in user_ids))
            self.echo(f"* {names} typing...")

    def on_message(self, message: ChatMessage) -> None:
        stamp = message.timestamp.strftime("%H:%M")
        if message.kind == KIND_SYSTEM:
            self.echo(f"* {message.content}")
        elif message.kind == KIND_FILE and message.attachment is not None:
            size = format_file_size(message.attachment.size)
            self.echo(
                f"[{stamp}] {display_name(message.sender_id)} sent "
                f"{message.attachment.name} ({size})"
            )
        else:
            self.echo(f"[{stamp}] {display_name(message.sender_id)}: {message.content}")

    def on_peer_changed(self, link: PeerLink) -> None:
        previous = self._peer_states.get(link.peer_id)
        self._peer_states[link.peer_id] = link.state
        if link.state is LinkState.CONNECTED and previous is not LinkState.CONNECTED:
            self.echo(f"* call connected with {display_name(link.peer_id)}")

    def on_peer_removed(self, peer_id: str) -> None:
        if self._peer_states.pop(peer_id, None) is not None:
            self.echo(f"* call ended with {display_name(peer_id)}")

    def on_local_media_changed(self, video_on: bool, audio_on: bool) -> None:
        self.echo(f"* your video is {on_off(video_on)}, audio is {on_off(audio_on)}")

    def on_error(self, message: str) -> None:
        self.echo(f"! relay error: {message}")


async def handle_line(
    session: RoomSession, line: str, echo: Callable[[str], None] = print
) -> bool:
    """Run one console line.

    Returns:
        False when the user asked to quit, True otherwise.
    """
    line = line.strip()
    if not line:
        return True

    try:
        if line == "/quit":
            return False
        elif line == "/help":
            echo(CONSOLE_HELP)
        elif line == "/who":
            for p in session.participants:
                echo(f"  {p.name} ({p.id}) video {on_off(p.video_on)}, audio {on_off(p.audio_on)}")
        elif line == "/video":
            await session.toggle_video()
        elif line == "/audio":
            await session.toggle_audio()
        elif line == "/rejoin":
            await session.rejoin()
        elif line.startswith("/file"):
            path = line[len("/file") :].strip()
            if not path:
                echo("Usage: /file PATH")
            else:
                await session.send_file(path)
        elif line.startswith("/"):
            echo(f"Unknown command {line.split()[0]}. Type /help for commands.")
        else:
            await session.send_text(line)
    except (FileTooLargeError, FileReadError) as e:
        echo(f"! cannot send file: {e}")
    except ChatroomRTCError as e:
        echo(f"! {e}")

    return True


async def run_console(session: RoomSession, room_id: str, user_id: str, join_call: bool):
    """Enter the room and relay stdin lines until /quit or EOF."""
    session.add_observer(ConsoleObserver())
    loop = asyncio.get_running_loop()

    await session.enter(room_id, user_id, join_call=join_call)
    print(f"Joined room {room_id} as {display_name(user_id)}. Type /help for commands.")
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not await handle_line(session, line):
                break
    finally:
        await session.leave()


def run_room_client(
    room_id: str,
    name: str,
    server: Optional[str] = None,
    join_call: bool = True,
    video_device: Optional[str] = None,
    audio_device: Optional[str] = None,
    media_format: Optional[str] = None,
):
    """Standalone function to run a console participant with CLI arguments.

    Args:
        room_id: Room to join.
        name: Display name; the user id is derived from it.
        server: Relay websocket URL. Overrides the config file value.
        join_call: Whether to take part in the call.
        video_device: Video capture device or file for MediaPlayer.
        audio_device: Audio capture device or file for MediaPlayer.
        media_format: Input format hint for MediaPlayer.
    """
    logging.basicConfig(level=logging.INFO)

    config = get_config()
    if server:
        config.signaling_websocket = server
    if video_device:
        config.media.video_device = video_device
    if audio_device:
        config.media.audio_device = audio_device
    if media_format:
        config.media.media_format = media_format

    session = RoomSession(config=config)
    user_id = user_id_from_name(name)

    try:
        asyncio.run(run_console(session, room_id, user_id, join_call))
    except KeyboardInterrupt:
        logging.info("Interrupted by user. Leaving room...")
    except Exception as e:
        logging.error(f"Room client error: {e}")
        raise
