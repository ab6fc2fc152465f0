"""Tests for Config loading and SyncConfig validation."""

import pytest

from crew_rtc.config import (
    DEFAULT_ICE_SERVERS,
    DEFAULT_SIGNALING_WEBSOCKET,
    Config,
    SyncConfig,
    get_config,
    reload_config,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with an empty cwd and home, and no crew-rtc environment variables."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    monkeypatch.delenv("CREW_RTC_ENV", raising=False)
    monkeypatch.delenv("CREW_RTC_SIGNALING_WS", raising=False)
    return work, home


def _loaded():
    config = Config()
    config.load()
    return config


# ── SyncConfig ───────────────────────────────────────────────────────────────


class TestSyncConfig:
    def test_defaults(self):
        sync = SyncConfig()
        assert sync.connect_timeout == 15.0
        assert sync.reconnection_attempts == 5
        assert sync.reconnection_delay == 1.0
        assert sync.broadcast_interval == 0.033
        assert sync.ice_servers == DEFAULT_ICE_SERVERS

    def test_default_ice_servers_are_copies(self):
        SyncConfig().ice_servers.append({"urls": "stun:example.org"})
        assert len(SyncConfig().ice_servers) == len(DEFAULT_ICE_SERVERS)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"connect_timeout": 0},
            {"reconnection_attempts": 0},
            {"reconnection_delay": -1},
            {"broadcast_interval": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            SyncConfig(**kwargs)

    def test_from_dict_skips_unknown_keys_and_bad_ice_entries(self):
        sync = SyncConfig.from_dict(
            {
                "reconnection_attempts": 3,
                "frobnicate": True,
                "ice_servers": [
                    {"urls": "turn:turn.example.org", "username": "u", "credential": "c"},
                    {"username": "no-urls"},
                    "stun:not-a-table",
                ],
            }
        )
        assert sync.reconnection_attempts == 3
        assert sync.ice_servers == [
            {"urls": "turn:turn.example.org", "username": "u", "credential": "c"}
        ]

    def test_from_dict_empty_ice_servers_means_host_only(self):
        assert SyncConfig.from_dict({"ice_servers": []}).ice_servers == []


# ── Config sources ───────────────────────────────────────────────────────────


class TestConfigLoading:
    def test_defaults_without_files(self, isolated):
        config = _loaded()
        assert config.environment == "production"
        assert config.signaling_websocket == DEFAULT_SIGNALING_WEBSOCKET
        assert config.sync == SyncConfig()

    def test_cwd_file_with_environment_and_sync(self, isolated, monkeypatch):
        work, _ = isolated
        (work / "crew-rtc.toml").write_text(
            """
[environments.development]
signaling_websocket = "ws://dev.example.org:9000"

[sync]
broadcast_interval = 0.05
ice_servers = []
"""
        )
        monkeypatch.setenv("CREW_RTC_ENV", "development")

        config = _loaded()
        assert config.environment == "development"
        assert config.signaling_websocket == "ws://dev.example.org:9000"
        assert config.sync.broadcast_interval == 0.05
        assert config.sync.ice_servers == []

    def test_home_file_used_when_no_cwd_file(self, isolated):
        _, home = isolated
        (home / ".crew-rtc").mkdir()
        (home / ".crew-rtc" / "config.toml").write_text(
            '[environments.production]\nsignaling_websocket = "ws://home.example.org"\n'
        )
        assert _loaded().signaling_websocket == "ws://home.example.org"

    def test_env_var_overrides_file(self, isolated, monkeypatch):
        work, _ = isolated
        (work / "crew-rtc.toml").write_text(
            '[environments.production]\nsignaling_websocket = "ws://file.example.org"\n'
        )
        monkeypatch.setenv("CREW_RTC_SIGNALING_WS", "ws://env.example.org:1234")
        assert _loaded().signaling_websocket == "ws://env.example.org:1234"

    def test_invalid_environment_falls_back_to_production(self, isolated, monkeypatch):
        monkeypatch.setenv("CREW_RTC_ENV", "moon")
        assert _loaded().environment == "production"

    def test_broken_toml_uses_defaults(self, isolated):
        work, _ = isolated
        (work / "crew-rtc.toml").write_text("[sync\nbroken = ")
        config = _loaded()
        assert config.signaling_websocket == DEFAULT_SIGNALING_WEBSOCKET

    def test_invalid_sync_section_keeps_defaults(self, isolated):
        work, _ = isolated
        (work / "crew-rtc.toml").write_text("[sync]\nreconnection_attempts = 0\n")
        assert _loaded().sync.reconnection_attempts == 5

    def test_reload_config_replaces_global(self, isolated, monkeypatch):
        first = reload_config()
        assert get_config() is first
        monkeypatch.setenv("CREW_RTC_SIGNALING_WS", "ws://other.example.org:1")
        second = reload_config()
        assert second is not first
        assert get_config().signaling_websocket == "ws://other.example.org:1"


class TestWebsocketUrl:
    def test_adds_default_port(self):
        config = Config()
        config.signaling_websocket = "ws://relay.example.org"
        assert config.get_websocket_url() == "ws://relay.example.org:8080"

    def test_keeps_explicit_port(self):
        config = Config()
        config.signaling_websocket = "ws://relay.example.org:9000"
        assert config.get_websocket_url() == "ws://relay.example.org:9000"

    def test_default_relay_is_local(self):
        assert DEFAULT_SIGNALING_WEBSOCKET == "ws://localhost:8080"
        assert Config().get_websocket_url() == "ws://localhost:8080"
