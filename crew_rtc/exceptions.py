"""Exception types raised by the crew-rtc synchronization layer.

None of these are allowed to reach the host game loop: the session and its
event handlers catch them, log, and fall back to single-player behaviour.
"""


class CrewRTCError(Exception):
    """Base class for all crew-rtc errors."""


class SignalingUnavailable(CrewRTCError):
    """The relay could not be reached, timed out, or dropped the connection.

    Raised after the bounded reconnection policy has been exhausted. Callers
    treat it as "multiplayer disabled" rather than a fatal error.
    """


class AlreadyJoined(CrewRTCError):
    """A join was requested for a room this session has already joined."""

    def __init__(self, room_id: str):
        super().__init__(f"Already joined room {room_id}")
        self.room_id = room_id


class PeerNegotiationFailure(CrewRTCError):
    """An offer, answer or description step failed for a single peer."""

    def __init__(self, peer_id: str, step: str, cause: Exception = None):
        message = f"Negotiation with {peer_id} failed during {step}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.peer_id = peer_id
        self.step = step
        self.cause = cause


class SerializationFailure(CrewRTCError):
    """A snapshot could not be produced, serialized or parsed."""
