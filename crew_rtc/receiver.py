"""Inbound snapshot handling on a secondary session."""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from crew_rtc.exceptions import SerializationFailure
from crew_rtc.snapshot import GameStateSnapshot, deserialize_snapshot, now_ms

logger = logging.getLogger(__name__)

StateCallback = Callable[[GameStateSnapshot, int, int], None]


@dataclass
class ReceivedStateRecord:
    """What the secondary has received so far.

    Attributes:
        received_count: Number of snapshots accepted.
        latency_ms: ``receive time - snapshot.timestamp`` of the last snapshot.
            Not corrected for clock skew between peers.
        last_snapshot: Most recently processed snapshot.
    """

    received_count: int = 0
    latency_ms: int = 0
    last_snapshot: Optional[GameStateSnapshot] = None


class StateReceiver:
    """Parses inbound snapshots and hands them to the game.

    No buffering or reordering is done: whichever message is processed last
    becomes ``last_snapshot``, even if it carries an older timestamp.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        """Initialize StateReceiver.

        Args:
            clock: Returns local wall clock time in ms.
        """
        self.clock = clock
        self.record = ReceivedStateRecord()
        self._callbacks: List[StateCallback] = []

    def add_callback(self, callback: StateCallback):
        """Register ``callback(snapshot, received_count, latency_ms)``."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: StateCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def handle_message(self, message: Union[str, bytes]) -> Optional[GameStateSnapshot]:
        """Process one data channel message.

        Returns:
            The accepted snapshot, or None if the message was dropped.
        """
        try:
            snapshot = deserialize_snapshot(message)
        except SerializationFailure as e:
            logger.error(f"Dropping invalid game state message: {e}")
            return None

        record = self.record
        record.received_count += 1
        record.last_snapshot = snapshot
        record.latency_ms = self.clock() - snapshot.timestamp

        for callback in list(self._callbacks):
            try:
                callback(snapshot, record.received_count, record.latency_ms)
            except Exception as e:
                logger.error(f"Game state callback failed: {e}")

        return snapshot
