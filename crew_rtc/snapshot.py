"""Game state snapshot record and its wire serialization.

A snapshot is one complete, timestamped picture of the primary's world. It is
produced fresh for every broadcast tick and always replaces the previous one on
the receiving side; nothing here supports partial updates.

Fields set to ``None`` were not reported by the game and are omitted on the
wire. The wire form uses the camelCase keys the browser client expects.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from crew_rtc.exceptions import SerializationFailure

SNAPSHOT_VERSION = 1

_AXES = ("x", "y", "z", "w")


def now_ms() -> int:
    """Current wall clock time in integer milliseconds."""
    return int(time.time() * 1000)


def _vector(value: Any, size: int, name: str) -> List[float]:
    """Normalize a position/rotation to a list of ``size`` floats.

    Accepts ``[x, y, z]`` sequences and ``{"x": .., "y": .., "z": ..}`` dicts.
    """
    if isinstance(value, dict):
        try:
            value = [value[axis] for axis in _AXES[:size]]
        except KeyError as e:
            raise SerializationFailure(f"{name} is missing axis {e}") from e
    if not isinstance(value, (list, tuple)) or len(value) != size:
        raise SerializationFailure(f"{name} must have {size} components: {value!r}")
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"{name} has a non-numeric component: {value!r}") from e


def _optional_vector(value: Any, size: int, name: str) -> Optional[List[float]]:
    if value is None:
        return None
    return _vector(value, size, name)


def _entity_list(data: dict, key: str, factory) -> Optional[list]:
    items = data.get(key)
    if items is None:
        return None
    if not isinstance(items, list):
        raise SerializationFailure(f"{key} must be a list")
    entities = []
    for item in items:
        if not isinstance(item, dict):
            raise SerializationFailure(f"{key} entries must be objects")
        entities.append(factory(item))
    return entities


@dataclass
class AsteroidState:
    """An asteroid as seen by the primary."""

    id: Any
    position: List[float]
    type: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"id": self.id, "position": self.position}
        if self.type is not None:
            data["type"] = self.type
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AsteroidState":
        return cls(
            id=data.get("id"),
            position=_vector(data.get("position"), 3, "asteroid position"),
            type=data.get("type"),
        )


@dataclass
class EnemyState:
    """An enemy ship as seen by the primary."""

    id: Any
    position: List[float]
    type: str

    def to_dict(self) -> dict:
        return {"id": self.id, "position": self.position, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict) -> "EnemyState":
        enemy_type = data.get("type")
        if not isinstance(enemy_type, str):
            raise SerializationFailure(f"enemy type is required: {enemy_type!r}")
        return cls(
            id=data.get("id"),
            position=_vector(data.get("position"), 3, "enemy position"),
            type=enemy_type,
        )


@dataclass
class OreState:
    """A collectible ore."""

    id: Any
    position: List[float]

    def to_dict(self) -> dict:
        return {"id": self.id, "position": self.position}

    @classmethod
    def from_dict(cls, data: dict) -> "OreState":
        return cls(
            id=data.get("id"),
            position=_vector(data.get("position"), 3, "ore position"),
        )


@dataclass
class BulletState:
    position: List[float]

    def to_dict(self) -> dict:
        return {"position": self.position}

    @classmethod
    def from_dict(cls, data: dict) -> "BulletState":
        return cls(position=_vector(data.get("position"), 3, "bullet position"))


@dataclass
class GameStateSnapshot:
    """Full replacement snapshot of the primary's game world.

    Attributes:
        timestamp: Primary's wall clock time in ms when the snapshot was taken.
        player_position: ``[x, y, z]`` of the player ship.
        player_rotation: ``[x, y, z, w]`` quaternion of the player ship.
        current_state: Label of the game state machine's state (e.g. "PLAYING").
        asteroids: Asteroids with id, position and optional type.
        enemies: Enemies with id, position and type.
        ores: Collectibles with id and position.
        bullets: Bullets with position only.
        version: Snapshot format version.
    """

    timestamp: int
    player_position: Optional[List[float]] = None
    player_rotation: Optional[List[float]] = None
    current_state: Optional[str] = None
    asteroids: Optional[List[AsteroidState]] = None
    enemies: Optional[List[EnemyState]] = None
    ores: Optional[List[OreState]] = None
    bullets: Optional[List[BulletState]] = None
    version: int = field(default=SNAPSHOT_VERSION)

    def to_dict(self) -> dict:
        """Convert to the wire dictionary, omitting unreported fields."""
        data = {"version": self.version, "timestamp": self.timestamp}
        if self.player_position is not None:
            data["playerPosition"] = self.player_position
        if self.player_rotation is not None:
            data["playerRotation"] = self.player_rotation
        if self.current_state is not None:
            data["currentState"] = self.current_state
        for key in ("asteroids", "enemies", "ores", "bullets"):
            entities = getattr(self, key)
            if entities is not None:
                data[key] = [entity.to_dict() for entity in entities]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "GameStateSnapshot":
        """Create a snapshot from its wire dictionary.

        Raises:
            SerializationFailure: If required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise SerializationFailure("Snapshot must be a JSON object")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise SerializationFailure(f"Snapshot timestamp is invalid: {timestamp!r}")
        try:
            timestamp = int(timestamp)
        except (ValueError, OverflowError) as e:
            raise SerializationFailure(f"Snapshot timestamp is invalid: {timestamp!r}") from e

        version = data.get("version", SNAPSHOT_VERSION)
        if isinstance(version, bool) or not isinstance(version, int):
            raise SerializationFailure(f"Snapshot version is invalid: {version!r}")

        current_state = data.get("currentState")
        if current_state is not None:
            current_state = str(current_state)

        return cls(
            timestamp=timestamp,
            player_position=_optional_vector(
                data.get("playerPosition"), 3, "playerPosition"
            ),
            player_rotation=_optional_vector(
                data.get("playerRotation"), 4, "playerRotation"
            ),
            current_state=current_state,
            asteroids=_entity_list(data, "asteroids", AsteroidState.from_dict),
            enemies=_entity_list(data, "enemies", EnemyState.from_dict),
            ores=_entity_list(data, "ores", OreState.from_dict),
            bullets=_entity_list(data, "bullets", BulletState.from_dict),
            version=version,
        )


def missing_fields(snapshot: GameStateSnapshot) -> List[str]:
    """Return the expected wire fields this snapshot does not report."""
    missing = []
    if snapshot.player_position is None:
        missing.append("playerPosition")
    if snapshot.asteroids is None:
        missing.append("asteroids")
    return missing


def coerce_snapshot(state: Union[GameStateSnapshot, dict]) -> GameStateSnapshot:
    """Accept either a snapshot or its wire dictionary from the game layer."""
    if isinstance(state, GameStateSnapshot):
        return state
    return GameStateSnapshot.from_dict(state)


def serialize_snapshot(snapshot: GameStateSnapshot) -> str:
    """Serialize a snapshot to compact JSON text.

    Raises:
        SerializationFailure: If the snapshot holds values JSON cannot encode.
    """
    try:
        return json.dumps(snapshot.to_dict(), separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Cannot serialize snapshot: {e}") from e


def deserialize_snapshot(payload: Union[str, bytes]) -> GameStateSnapshot:
    """Parse data channel text into a snapshot.

    Raises:
        SerializationFailure: If the payload is not valid snapshot JSON.
    """
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as e:
        raise SerializationFailure(f"Cannot parse snapshot: {e}") from e
    return GameStateSnapshot.from_dict(data)
