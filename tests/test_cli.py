"""Unit tests for CLI commands.

Tests for:
- relay: host/port handling
- join: required options, env var fallback and flag forwarding
"""

from unittest import mock

import pytest
from click.testing import CliRunner

from chatroom_rtc.cli import cli


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestRelayCommand:
    """Tests for 'chatroom-rtc relay'."""

    def test_defaults(self, runner):
        with mock.patch("chatroom_rtc.cli.run_relay") as run_relay:
            result = runner.invoke(cli, ["relay"])
        assert result.exit_code == 0
        run_relay.assert_called_once_with(host="localhost", port=4000)

    def test_custom_host_and_port(self, runner):
        with mock.patch("chatroom_rtc.cli.run_relay") as run_relay:
            result = runner.invoke(cli, ["relay", "--host", "0.0.0.0", "-p", "8080"])
        assert result.exit_code == 0
        run_relay.assert_called_once_with(host="0.0.0.0", port=8080)

    def test_invalid_port(self, runner):
        """Out-of-range ports exit with an error before starting."""
        with mock.patch("chatroom_rtc.cli.run_relay") as run_relay:
            result = runner.invoke(cli, ["relay", "--port", "70000"])
        assert result.exit_code == 1
        run_relay.assert_not_called()


class TestJoinCommand:
    """Tests for 'chatroom-rtc join'."""

    def test_missing_room_shows_help(self, runner):
        with mock.patch("chatroom_rtc.cli.run_room_client") as run_client:
            result = runner.invoke(cli, ["join", "--name", "Ada"])
        assert result.exit_code == 1
        assert "Join a room as a console participant" in result.output
        run_client.assert_not_called()

    def test_blank_name_rejected(self, runner):
        with mock.patch("chatroom_rtc.cli.run_room_client") as run_client:
            result = runner.invoke(cli, ["join", "--room", "R1", "--name", "   "])
        assert result.exit_code == 1
        run_client.assert_not_called()

    def test_forwards_options(self, runner):
        with mock.patch("chatroom_rtc.cli.run_room_client") as run_client:
            result = runner.invoke(
                cli,
                [
                    "join",
                    "-r", "R1",
                    "-n", "Ada Lovelace",
                    "-s", "ws://relay:4000",
                    "--no-call",
                    "--video-device", "/dev/video0",
                    "--media-format", "v4l2",
                ],
            )
        assert result.exit_code == 0
        run_client.assert_called_once_with(
            room_id="R1",
            name="Ada Lovelace",
            server="ws://relay:4000",
            join_call=False,
            video_device="/dev/video0",
            audio_device=None,
            media_format="v4l2",
        )

    def test_server_from_environment(self, runner):
        """--server falls back to CHATROOM_RTC_SIGNALING_WS."""
        with mock.patch("chatroom_rtc.cli.run_room_client") as run_client:
            result = runner.invoke(
                cli,
                ["join", "--room", "R1", "--name", "Ada"],
                env={"CHATROOM_RTC_SIGNALING_WS": "ws://from-env:4000"},
            )
        assert result.exit_code == 0
        assert run_client.call_args.kwargs["server"] == "ws://from-env:4000"
        assert run_client.call_args.kwargs["join_call"] is True
