"""Shared helpers for tests that need a live relay."""

import contextlib

import pytest
import websockets

from crew_rtc.config import Config, SyncConfig
from crew_rtc.relay import RelayServer


@contextlib.asynccontextmanager
async def running_relay():
    """Run a RelayServer on a free localhost port; yields (relay, url)."""
    relay = RelayServer()
    async with websockets.serve(relay.handler, "127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield relay, f"ws://127.0.0.1:{port}"


def fast_config(url="ws://127.0.0.1:1", **sync):
    """Config with short timeouts and host-only ICE, bypassing config files."""
    config = Config()
    config.signaling_websocket = url
    settings = {
        "connect_timeout": 2.0,
        "reconnection_attempts": 2,
        "reconnection_delay": 0.01,
        "broadcast_interval": 0.02,
        "ice_servers": [],
    }
    settings.update(sync)
    config.sync = SyncConfig(**settings)
    return config


@pytest.fixture
def relay_server():
    return running_relay
