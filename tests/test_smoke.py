"""Smoke tests for the crew-rtc package.

These verify that the package imports cleanly and the CLI entry point is
reachable. They are intentionally lightweight and make no network calls.
"""

from unittest import mock

import pytest
from click.testing import CliRunner

from crew_rtc.cli import cli


# ── Package imports ──────────────────────────────────────────────────────────


class TestImports:
    def test_public_api(self):
        import crew_rtc

        for name in crew_rtc.__all__:
            assert hasattr(crew_rtc, name), name

    def test_version(self):
        import crew_rtc

        assert crew_rtc.__version__


# ── CLI entry point ──────────────────────────────────────────────────────────


class TestCLIEntryPoint:
    def test_main_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("relay", "captain", "crew"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["relay", "captain", "crew"])
    def test_subcommand_help(self, command):
        result = CliRunner().invoke(cli, [command, "--help"])
        assert result.exit_code == 0

    def test_room_is_required(self):
        result = CliRunner().invoke(cli, ["captain"])
        assert result.exit_code != 0
        assert "--room" in result.output


class TestCLICommands:
    @pytest.fixture(autouse=True)
    def fresh_config(self):
        from crew_rtc.config import Config

        with mock.patch("crew_rtc.config.get_config", return_value=Config()):
            yield

    def test_captain_unreachable_relay_exits_1(self):
        with mock.patch(
            "crew_rtc.demo.run_captain", new=mock.AsyncMock(return_value=False)
        ) as run:
            result = CliRunner().invoke(
                cli, ["captain", "--room", "room1", "--relay-url", "ws://127.0.0.1:1"]
            )
        assert result.exit_code == 1
        assert run.await_args.args == ("room1",)

    def test_crew_passes_duration(self):
        with mock.patch(
            "crew_rtc.demo.run_crew", new=mock.AsyncMock(return_value=True)
        ) as run:
            result = CliRunner().invoke(
                cli, ["crew", "-r", "room1", "--duration", "0.5"]
            )
        assert result.exit_code == 0
        assert run.await_args.kwargs["duration"] == 0.5

    def test_relay_url_overrides_config(self):
        with mock.patch(
            "crew_rtc.demo.run_crew", new=mock.AsyncMock(return_value=True)
        ) as run:
            CliRunner().invoke(
                cli, ["crew", "-r", "room1", "--relay-url", "ws://relay.example.org:7"]
            )
        config = run.await_args.kwargs["config"]
        assert config.get_websocket_url() == "ws://relay.example.org:7"


# ── Demo world ───────────────────────────────────────────────────────────────


class TestDemoWorld:
    def test_collects_complete_snapshots(self):
        from crew_rtc.demo import DemoWorld
        from crew_rtc.snapshot import missing_fields, serialize_snapshot

        world = DemoWorld(asteroid_count=3, seed=1)
        snapshot = world.collect_state()
        assert len(snapshot.asteroids) == 3
        assert missing_fields(snapshot) == []
        assert serialize_snapshot(snapshot)
