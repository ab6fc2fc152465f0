"""Snapshot fan-out from the primary session to every open peer.

Only the primary runs a StateBroadcaster. Each tick asks the game for one
fresh snapshot and writes it to every data channel that currently reports
``open``. The channels are unordered and unreliable, so a lost or late
snapshot is simply superseded by the next one.
"""

import asyncio
import logging
from typing import Callable, Optional, Union

from crew_rtc.exceptions import SerializationFailure
from crew_rtc.peers import PeerConnectionManager
from crew_rtc.snapshot import (
    GameStateSnapshot,
    coerce_snapshot,
    missing_fields,
    serialize_snapshot,
)

logger = logging.getLogger(__name__)

CollectState = Callable[[], Optional[Union[GameStateSnapshot, dict]]]


class StateBroadcaster:
    """Sends game state snapshots to all connected secondaries.

    Attributes:
        peers: PeerConnectionManager whose open channels receive snapshots.
        collect_state: Game collaborator returning a snapshot, a snapshot
            dict, or None when there is no game to send.
        interval: Seconds between ticks when driven by ``run()``.
        sent_count: Number of ticks that reached at least one peer.
    """

    def __init__(
        self,
        peers: PeerConnectionManager,
        collect_state: Optional[CollectState] = None,
        interval: float = 0.033,
    ):
        self.peers = peers
        self.collect_state = collect_state
        self.interval = interval
        self.sent_count = 0

    def tick(self) -> int:
        """Collect one snapshot and send it to every open channel.

        Returns:
            Number of peers the snapshot was written to.
        """
        if not self.peers.open_channels():
            return 0
        if self.collect_state is None:
            return 0

        try:
            state = self.collect_state()
        except Exception as e:
            logger.error(f"Failed to collect game state: {e}")
            return 0

        if state is None:
            return 0
        return self.send(state)

    def send(self, state: Union[GameStateSnapshot, dict]) -> int:
        """Serialize ``state`` once and write it to every open channel.

        Returns:
            Number of peers the snapshot was written to.
        """
        channels = self.peers.open_channels()
        if not channels:
            return 0

        try:
            snapshot = coerce_snapshot(state)
            payload = serialize_snapshot(snapshot)
        except SerializationFailure as e:
            logger.error(f"Skipping broadcast: {e}")
            return 0

        missing = missing_fields(snapshot)
        if missing:
            logger.warning(f"Game state missing expected fields: {', '.join(missing)}")

        sent = 0
        for peer_id, channel in channels.items():
            try:
                channel.send(payload)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send game state to {peer_id}: {e}")

        if sent:
            self.sent_count += 1
        logger.debug(f"Broadcast snapshot {snapshot.timestamp} to {sent} peer(s)")
        return sent

    async def run(self):
        """Call ``tick()`` every ``interval`` seconds until cancelled."""
        logger.info(f"Starting state broadcast every {self.interval * 1000:.0f} ms")
        try:
            while True:
                try:
                    self.tick()
                except Exception as e:
                    logger.error(f"Broadcast tick failed: {e}")
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("State broadcast stopped")
            raise
