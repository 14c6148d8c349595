"""Smoke tests for the chatroom-rtc package.

These tests verify that the installed package is structurally sound: all
subpackages importable and the CLI entry point reachable. They are
intentionally lightweight and fast.
"""

from click.testing import CliRunner

from chatroom_rtc.cli import cli


# ── Subpackage imports ────────────────────────────────────────────────────────


class TestSubpackageImports:
    """Each chatroom_rtc subpackage must be importable without error."""

    def test_import_mesh_first(self):
        """chatroom_rtc.mesh must import cleanly on its own."""
        import chatroom_rtc.mesh  # noqa: F401

    def test_import_client(self):
        """chatroom_rtc.client must be importable."""
        import chatroom_rtc.client  # noqa: F401

    def test_import_room_session(self):
        """RoomSession must be importable from chatroom_rtc.client."""
        from chatroom_rtc.client import RoomSession  # noqa: F401

    def test_import_relay(self):
        from chatroom_rtc.relay import RoomRelay  # noqa: F401


# ── CLI entry point ───────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    """The CLI entry point must be reachable and respond to --help."""

    def test_main_help(self):
        """chatroom-rtc --help must exit 0 and list core commands."""
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "relay" in result.output
        assert "join" in result.output

    def test_join_help(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["join", "--help"])
        assert result.exit_code == 0
        assert "--no-call" in result.output
