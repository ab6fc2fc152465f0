"""Captain and crew runners used by the ``crew-rtc`` CLI.

The captain side broadcasts a synthetic world (a ship flying through drifting
asteroids) so a room can be exercised end to end without the game itself.
"""

import asyncio
import logging
import math
import random
from typing import Optional

from crew_rtc.config import Config
from crew_rtc.session import SyncSession
from crew_rtc.snapshot import (
    AsteroidState,
    BulletState,
    EnemyState,
    GameStateSnapshot,
    OreState,
    now_ms,
)

logger = logging.getLogger(__name__)


class DemoWorld:
    """Deterministic stand-in for the game's ``collect_state``."""

    def __init__(self, asteroid_count: int = 5, seed: Optional[int] = None):
        rng = random.Random(seed)
        self._asteroids = [
            (f"asteroid-{i}", [rng.uniform(-100, 100) for _ in range(3)], rng.choice(["iron", "ice"]))
            for i in range(asteroid_count)
        ]
        self._started = now_ms()

    def collect_state(self) -> GameStateSnapshot:
        timestamp = now_ms()
        t = (timestamp - self._started) / 1000.0
        heading = t * 0.5

        return GameStateSnapshot(
            timestamp=timestamp,
            player_position=[math.cos(heading) * 20, 0.0, math.sin(heading) * 20],
            player_rotation=[0.0, math.sin(heading / 2), 0.0, math.cos(heading / 2)],
            current_state="PLAYING",
            asteroids=[
                AsteroidState(id=aid, position=[x, y + math.sin(t + x), z], type=kind)
                for aid, (x, y, z), kind in self._asteroids
            ],
            enemies=[EnemyState(id="enemy-0", position=[0.0, 10.0, 0.0], type="drone")],
            ores=[OreState(id="ore-0", position=[5.0, 0.0, 5.0])],
            bullets=[BulletState(position=[math.cos(t) * 5, 0.0, math.sin(t) * 5])],
        )


async def _report(session: SyncSession, duration: Optional[float], status_interval: float):
    elapsed = 0.0
    while duration is None or elapsed < duration:
        step = status_interval if duration is None else min(status_interval, duration - elapsed)
        await asyncio.sleep(step)
        elapsed += step
        logger.info(f"Status: {session.status()}")


async def run_captain(
    room_id: str,
    url: Optional[str] = None,
    config: Optional[Config] = None,
    duration: Optional[float] = None,
    status_interval: float = 5.0,
) -> bool:
    """Join ``room_id`` as captain and broadcast the demo world.

    Returns:
        False if the relay could not be reached.
    """
    world = DemoWorld()
    async with SyncSession(config) as session:
        joined = await session.start(
            room_id,
            request_primary=True,
            collect_state=world.collect_state,
            url=url,
        )
        if not joined:
            return False
        if not session.is_primary:
            logger.warning(f"Room {room_id} already has a captain; joined as crew")
        await _report(session, duration, status_interval)
    return True


async def run_crew(
    room_id: str,
    url: Optional[str] = None,
    config: Optional[Config] = None,
    duration: Optional[float] = None,
    status_interval: float = 5.0,
) -> bool:
    """Join ``room_id`` as crew and log what arrives from the captain.

    Returns:
        False if the relay could not be reached.
    """

    def on_state(snapshot: GameStateSnapshot):
        logger.debug(
            f"Snapshot {snapshot.timestamp}: player at {snapshot.player_position}, "
            f"{len(snapshot.asteroids or [])} asteroids"
        )

    async with SyncSession(config) as session:
        joined = await session.start(
            room_id, request_primary=False, on_state_received=on_state, url=url
        )
        if not joined:
            return False
        await _report(session, duration, status_interval)
    return True
