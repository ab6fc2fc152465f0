"""Relay (signaling) connection for crew-rtc.

The SignalingChannel owns the websocket to the relay. It is the ONLY place
that reads from that websocket: every inbound relay message is turned into a
``SignalingEvent`` and put on ``events``, except ``role-assigned``, which
resolves the future of the join that is waiting for it.

The channel never interprets SDP or ICE payloads and never touches game state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import websockets

from crew_rtc.config import Config, get_config
from crew_rtc.exceptions import CrewRTCError, SignalingUnavailable
from crew_rtc.protocol import (
    MSG_ANSWER,
    MSG_ERROR,
    MSG_ICE_CANDIDATE,
    MSG_JOIN_ROOM,
    MSG_NEW_PEER,
    MSG_OFFER,
    MSG_PEER_DISCONNECTED,
    MSG_PRIMARY_DISCONNECTED,
    MSG_ROLE_ASSIGNED,
    RELAY_PAYLOAD_KEYS,
    format_message,
    parse_message,
)
from crew_rtc.roles import RoleAssignment

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

# Transport-level events
EVENT_CONNECTED = "connected"
EVENT_CONNECTION_ERROR = "connection-error"
EVENT_DISCONNECTED = "disconnected"

# Relay events
EVENT_PEER_JOINED = "peer-joined"
EVENT_OFFER = "offer"
EVENT_ANSWER = "answer"
EVENT_ICE_CANDIDATE = "ice-candidate"
EVENT_PEER_DISCONNECTED = "peer-disconnected"
EVENT_PRIMARY_DISCONNECTED = "primary-disconnected"

# Relay message type -> event name for messages addressed from a peer
_RELAYED_EVENTS = {
    MSG_OFFER: EVENT_OFFER,
    MSG_ANSWER: EVENT_ANSWER,
    MSG_ICE_CANDIDATE: EVENT_ICE_CANDIDATE,
}


@dataclass(frozen=True)
class SignalingEvent:
    """One inbound signaling event.

    Attributes:
        name: One of the ``EVENT_*`` constants.
        peer_id: Remote peer the event concerns, if any.
        payload: SDP dict, ICE candidate dict or error reason, depending on name.
    """

    name: str
    peer_id: Optional[str] = None
    payload: Any = None


class SignalingChannel:
    """Auto-reconnecting websocket connection to the relay.

    Attributes:
        config: Config providing the relay URL and retry policy.
        url: Relay websocket URL.
        events: Queue of SignalingEvent for the owning session to consume.
        status: Human-readable connection status for debug displays.
    """

    def __init__(self, config: Optional[Config] = None, url: Optional[str] = None):
        self.config = config or get_config()
        self.url = url
        self.events: asyncio.Queue = asyncio.Queue()
        self.status = "Not connected"
        self.websocket: Optional["ClientConnection"] = None

        self._connected = False
        self._closed = False
        self._reader_task: Optional[asyncio.Task] = None
        self._pending_join: Optional[asyncio.Future] = None
        self._pending_room: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, url: Optional[str] = None) -> "SignalingChannel":
        """Connect to the relay and start routing its messages.

        Args:
            url: Relay URL. Defaults to the configured signaling websocket.

        Returns:
            This channel, connected.

        Raises:
            SignalingUnavailable: If every connection attempt failed.
        """
        if url:
            self.url = url
        if not self.url:
            self.url = self.config.get_websocket_url()

        self._closed = False
        self.websocket = await self._open_with_retry()
        self._reader_task = asyncio.create_task(self._read_loop())
        return self

    async def _open_with_retry(self) -> "ClientConnection":
        """Open the websocket using the bounded retry policy."""
        sync = self.config.sync
        attempts = sync.reconnection_attempts
        reason = "unknown error"

        for attempt in range(1, attempts + 1):
            self.status = "Connecting..."
            try:
                websocket = await websockets.connect(
                    self.url, open_timeout=sync.connect_timeout
                )
            except (
                OSError,
                asyncio.TimeoutError,
                websockets.exceptions.WebSocketException,
            ) as e:
                reason = str(e) or type(e).__name__
                logger.warning(
                    f"Relay connection attempt {attempt}/{attempts} to {self.url} "
                    f"failed: {reason}"
                )
                self._emit(SignalingEvent(EVENT_CONNECTION_ERROR, payload=reason))
                if attempt < attempts:
                    await asyncio.sleep(sync.reconnection_delay)
                continue

            self._connected = True
            self.status = "Connected"
            logger.info(f"Connected to relay at {self.url}")
            self._emit(SignalingEvent(EVENT_CONNECTED))
            return websocket

        self.status = f"Error: {reason}"
        raise SignalingUnavailable(
            f"Could not reach relay at {self.url} after {attempts} attempts: {reason}"
        )

    async def _read_loop(self):
        """Route relay messages until closed; reconnect if the relay drops us."""
        while True:
            reason = "closed by relay"
            try:
                async for message in self.websocket:
                    self._handle_message(message)
            except websockets.exceptions.ConnectionClosed as e:
                reason = str(e) or reason

            self._connected = False
            if self._closed:
                return

            self._fail_pending_join(f"Relay connection lost: {reason}")
            self.status = f"Disconnected: {reason}"
            logger.warning(f"Relay connection lost: {reason}. Reconnecting...")
            self._emit(SignalingEvent(EVENT_DISCONNECTED, payload=reason))

            try:
                self.websocket = await self._open_with_retry()
            except SignalingUnavailable as e:
                logger.error(f"Giving up on relay: {e}")
                self.status = "Disconnected"
                return

    def _handle_message(self, message):
        """Turn one relay message into an event or a join resolution."""
        try:
            msg_type, data = parse_message(message)
        except ValueError as e:
            logger.error(f"Invalid message from relay: {e}")
            return

        logger.debug(f"Relay message: {msg_type}")

        if msg_type == MSG_ROLE_ASSIGNED:
            self._resolve_join(data)

        elif msg_type == MSG_NEW_PEER:
            peer_id = data.get("peerId")
            if not peer_id:
                logger.warning("new-peer message missing peerId")
                return
            self._emit(SignalingEvent(EVENT_PEER_JOINED, peer_id=peer_id))

        elif msg_type in _RELAYED_EVENTS:
            payload_key, sender_key = RELAY_PAYLOAD_KEYS[msg_type]
            sender = data.get(sender_key)
            payload = data.get(payload_key)
            if not sender or payload is None:
                logger.warning(f"{msg_type} message missing {sender_key} or {payload_key}")
                return
            self._emit(
                SignalingEvent(_RELAYED_EVENTS[msg_type], peer_id=sender, payload=payload)
            )

        elif msg_type == MSG_PEER_DISCONNECTED:
            peer_id = data.get("peerId")
            if not peer_id:
                logger.warning("peer-disconnected message missing peerId")
                return
            self._emit(SignalingEvent(EVENT_PEER_DISCONNECTED, peer_id=peer_id))

        elif msg_type == MSG_PRIMARY_DISCONNECTED:
            self._emit(SignalingEvent(EVENT_PRIMARY_DISCONNECTED))

        elif msg_type == MSG_ERROR:
            reason = data.get("reason", "unknown")
            logger.error(f"Relay reported an error: {reason}")
            self._fail_pending_join(f"Relay rejected request: {reason}")

        else:
            logger.debug(f"Ignoring relay message type: {msg_type}")

    def _resolve_join(self, data: dict):
        future = self._pending_join
        if future is None or future.done():
            logger.warning("Received role-assigned with no join in progress")
            return
        future.set_result(
            RoleAssignment(
                room_id=data.get("roomId") or self._pending_room,
                is_primary=bool(data.get("isPrimary", False)),
                peer_id=data.get("peerId"),
                peers=tuple(data.get("peers") or ()),
            )
        )

    def _fail_pending_join(self, reason: str):
        future = self._pending_join
        if future is not None and not future.done():
            future.set_exception(SignalingUnavailable(reason))

    def _emit(self, event: SignalingEvent):
        self.events.put_nowait(event)

    async def join_room(self, room_id: str, request_primary: bool) -> RoleAssignment:
        """Send ``join-room`` and wait for the single ``role-assigned`` reply.

        Args:
            room_id: Room to join.
            request_primary: Whether to ask for the primary role.

        Returns:
            RoleAssignment from the relay.

        Raises:
            SignalingUnavailable: If not connected, the connection drops, or the
                relay does not answer within ``connect_timeout``.
            CrewRTCError: If another join is still waiting for its reply.
        """
        if not self._connected:
            raise SignalingUnavailable("Not connected to relay")
        if self._pending_join is not None and not self._pending_join.done():
            raise CrewRTCError(f"A join for room {self._pending_room} is in progress")

        future = asyncio.get_running_loop().create_future()
        self._pending_join = future
        self._pending_room = room_id
        timeout = self.config.sync.connect_timeout

        try:
            await self.websocket.send(
                format_message(
                    MSG_JOIN_ROOM, roomId=room_id, requestPrimary=bool(request_primary)
                )
            )
            logger.info(f"Requested to join room {room_id} (primary={request_primary})")
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise SignalingUnavailable(
                f"Relay did not assign a role for room {room_id} within {timeout}s"
            ) from None
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingUnavailable(f"Relay connection lost during join: {e}") from e
        finally:
            self._pending_join = None
            self._pending_room = None

    async def _send(self, msg_type: str, **payload) -> bool:
        """Fire-and-forget send; a dead connection is logged, not raised."""
        if not self._connected:
            logger.warning(f"Cannot send {msg_type}: not connected to relay")
            return False
        try:
            await self.websocket.send(format_message(msg_type, **payload))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Failed to send {msg_type}: {e}")
            return False
        return True

    async def send_offer(self, target_peer_id: str, offer: dict) -> bool:
        return await self._send(MSG_OFFER, targetId=target_peer_id, offer=offer)

    async def send_answer(self, target_peer_id: str, answer: dict) -> bool:
        return await self._send(MSG_ANSWER, targetId=target_peer_id, answer=answer)

    async def send_ice_candidate(self, target_peer_id: str, candidate: dict) -> bool:
        return await self._send(
            MSG_ICE_CANDIDATE, targetId=target_peer_id, candidate=candidate
        )

    async def close(self):
        """Close the relay connection. Safe to call more than once."""
        self._closed = True
        self._connected = False
        self._fail_pending_join("Signaling channel closed")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None

        self.status = "Disconnected"
        logger.info("Signaling channel closed")
