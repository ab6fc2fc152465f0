"""Unified CLI for crew-rtc using Click."""

import asyncio
import logging
import sys

import click
from loguru import logger


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


def _load_config(relay_url):
    from crew_rtc.config import get_config

    config = get_config()
    if relay_url:
        config.signaling_websocket = relay_url
    return config


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to (default: localhost).")
@click.option("--port", type=int, default=8080, help="Port to listen on (default: 8080).")
def relay(host, port):
    """Run the relay (signaling) server.

    The relay only brokers room membership and WebRTC connection setup;
    game state flows directly between peers.

    Example:
        crew-rtc relay --host 0.0.0.0 --port 9000
    """
    from crew_rtc.relay import serve

    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")


# =============================================================================
# Sessions
# =============================================================================


@cli.command()
@click.option("--room", "-r", required=True, help="Room (game) id to join.")
@click.option(
    "--relay-url",
    type=str,
    required=False,
    help="Relay websocket URL. Overrides config file and CREW_RTC_SIGNALING_WS.",
)
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Stop after this many seconds (default: run until interrupted).",
)
def captain(room, relay_url, duration):
    """Join a room as captain and broadcast a demo world.

    Example:
        crew-rtc captain --room room1
    """
    from crew_rtc.demo import run_captain

    config = _load_config(relay_url)
    logger.info(f"Joining room {room} as captain via {config.get_websocket_url()}")

    try:
        ok = asyncio.run(run_captain(room, config=config, duration=duration))
    except KeyboardInterrupt:
        logger.info("Captain interrupted by user. Shutting down...")
        return

    if not ok:
        logger.error("Could not reach the relay; multiplayer unavailable")
        sys.exit(1)


@cli.command()
@click.option("--room", "-r", required=True, help="Room (game) id to join.")
@click.option(
    "--relay-url",
    type=str,
    required=False,
    help="Relay websocket URL. Overrides config file and CREW_RTC_SIGNALING_WS.",
)
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Stop after this many seconds (default: run until interrupted).",
)
def crew(room, relay_url, duration):
    """Join a room as crew and report received game state.

    Example:
        crew-rtc crew --room room1 -v
    """
    from crew_rtc.demo import run_crew

    config = _load_config(relay_url)
    logger.info(f"Joining room {room} as crew via {config.get_websocket_url()}")

    try:
        ok = asyncio.run(run_crew(room, config=config, duration=duration))
    except KeyboardInterrupt:
        logger.info("Crew interrupted by user. Shutting down...")
        return

    if not ok:
        logger.error("Could not reach the relay; multiplayer unavailable")
        sys.exit(1)


if __name__ == "__main__":
    cli()
