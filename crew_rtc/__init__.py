"""Peer-to-peer game state synchronization for crew-rtc.

This package provides:
- snapshot: Game state snapshot record and its JSON wire form
- signaling: Relay websocket connection and signaling events
- roles: Primary (captain) / secondary (crew) role resolution
- peers: WebRTC peer links and the gameState data channel
- broadcaster / receiver: Snapshot fan-out and intake
- session: SyncSession tying the pieces together for one game
- relay: The relay (signaling) server
"""

from crew_rtc.exceptions import (
    AlreadyJoined,
    CrewRTCError,
    PeerNegotiationFailure,
    SerializationFailure,
    SignalingUnavailable,
)
from crew_rtc.roles import RoleAssignment, SessionRoleResolver
from crew_rtc.session import SyncSession
from crew_rtc.snapshot import (
    AsteroidState,
    BulletState,
    EnemyState,
    GameStateSnapshot,
    OreState,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "CrewRTCError",
    "SignalingUnavailable",
    "AlreadyJoined",
    "PeerNegotiationFailure",
    "SerializationFailure",
    # Roles
    "RoleAssignment",
    "SessionRoleResolver",
    # Session
    "SyncSession",
    # Snapshots
    "GameStateSnapshot",
    "AsteroidState",
    "EnemyState",
    "OreState",
    "BulletState",
]
