"""Unified CLI for chatroom-rtc using Click."""

import sys

import click
from loguru import logger

from chatroom_rtc.identity import user_id_from_name
from chatroom_rtc.relay import run_relay
from chatroom_rtc.rtc_room import run_room_client


@click.group()
def cli():
    pass


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option(
    "--host",
    default="localhost",
    show_default=True,
    help="Host to bind to.",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=4000,
    show_default=True,
    help="Port to listen on.",
)
def relay(host, port):
    """Run the room relay.

    The relay keeps room and call membership in memory and forwards
    offers, answers and candidates between participants. Media never
    passes through it.

    Example:
        chatroom-rtc relay --host 0.0.0.0 --port 4000
    """
    if not 0 < port < 65536:
        logger.error(f"Invalid port: {port}")
        sys.exit(1)
    run_relay(host=host, port=port)


# =============================================================================
# Participant
# =============================================================================


def show_join_help():
    """Display console usage for the join command."""
    help_text = """
    chatroom-rtc join - Join a room as a console participant.

    Usage:
      chatroom-rtc join --room ROOM --name "Your Name"

    Tips:
      - Everyone using the same --room ends up in the same room.
      - Your user id is your name in lower case with spaces replaced by '-'.
      - Without --video-device/--audio-device you join the call receive-only.
      - Type /help inside the room for the list of commands.
    """
    click.echo(help_text)


@cli.command()
@click.option(
    "--room",
    "-r",
    type=str,
    required=False,
    help="Room id to join.",
)
@click.option(
    "--name",
    "-n",
    type=str,
    required=False,
    help="Display name. The user id is derived from it.",
)
@click.option(
    "--server",
    "-s",
    type=str,
    envvar="CHATROOM_RTC_SIGNALING_WS",
    required=False,
    help="Relay websocket URL (e.g. ws://localhost:4000). Overrides config file value.",
)
@click.option(
    "--no-call",
    is_flag=True,
    default=False,
    help="Chat only; do not join the call.",
)
@click.option(
    "--video-device",
    type=str,
    required=False,
    help="Video capture device or file (e.g. /dev/video0).",
)
@click.option(
    "--audio-device",
    type=str,
    required=False,
    help="Audio capture device or file.",
)
@click.option(
    "--media-format",
    type=str,
    required=False,
    help="Capture input format (e.g. v4l2, avfoundation, pulse).",
)
def join(room, name, server, no_call, video_device, audio_device, media_format):
    """Join a room as a console participant."""
    if not room or not name:
        show_join_help()
        logger.error("Both --room and --name are required")
        sys.exit(1)

    if not user_id_from_name(name):
        logger.error(f"Name must contain at least one non-space character: {name!r}")
        sys.exit(1)

    logger.info(f"Joining room {room} as {user_id_from_name(name)}")
    run_room_client(
        room_id=room,
        name=name,
        server=server,
        join_call=not no_call,
        video_device=video_device,
        audio_device=audio_device,
        media_format=media_format,
    )


if __name__ == "__main__":
    cli()
