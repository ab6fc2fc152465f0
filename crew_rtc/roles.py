"""Session role resolution (primary / captain vs. secondary / crew).

The relay is authoritative: when two sessions ask to be primary for the same
room, whichever join the relay accepts first wins and the other is told
``isPrimary: false``. This module does not arbitrate; it makes sure each room
is joined exactly once per session and surfaces the relay's answer unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Tuple

from crew_rtc.exceptions import AlreadyJoined

if TYPE_CHECKING:
    from crew_rtc.signaling import SignalingChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleAssignment:
    """The relay's answer to one join request.

    Attributes:
        room_id: Room that was joined.
        is_primary: True if this session is the room's primary.
        peer_id: Id the relay assigned to this session, if reported.
        peers: Ids of the peers already in the room when we joined.
    """

    room_id: str
    is_primary: bool
    peer_id: Optional[str] = None
    peers: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def role(self) -> str:
        """Display name of the role."""
        return "CAPTAIN" if self.is_primary else "CREW"


class SessionRoleResolver:
    """Joins rooms through the relay and remembers the resulting roles.

    Attributes:
        signaling: Connected SignalingChannel used for the join.
        assignments: room_id -> RoleAssignment for every resolved room.
    """

    def __init__(self, signaling: "SignalingChannel"):
        self.signaling = signaling
        self.assignments: Dict[str, RoleAssignment] = {}

    async def resolve(self, room_id: str, request_primary: bool) -> RoleAssignment:
        """Join ``room_id`` and return the relay's role decision.

        Args:
            room_id: Room to join.
            request_primary: Whether this session asks to be primary.

        Returns:
            RoleAssignment from the relay.

        Raises:
            AlreadyJoined: If this room was already resolved by this session.
            SignalingUnavailable: If the relay is unreachable or never answers.
        """
        if room_id in self.assignments:
            raise AlreadyJoined(room_id)

        assignment = await self.signaling.join_room(room_id, request_primary)

        if request_primary and not assignment.is_primary:
            logger.warning(
                f"Requested primary for room {room_id} but another session holds it; "
                f"joining as secondary"
            )
        logger.info(f"Joined room {room_id} as {assignment.role}")

        self.assignments[room_id] = assignment
        return assignment

    def get(self, room_id: str) -> Optional[RoleAssignment]:
        return self.assignments.get(room_id)

    def forget(self, room_id: str) -> None:
        """Drop the record for ``room_id`` so it can be joined afresh."""
        self.assignments.pop(room_id, None)
