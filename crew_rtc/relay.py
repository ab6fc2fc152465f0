"""WebSocket relay (signaling) server for crew-rtc rooms.

The relay brokers connection setup only. It tracks which connections are in
which room, decides which one is the room's primary, and forwards offers,
answers and ICE candidates between peers. It never sees game state.

Primary arbitration: the first join that asks for primary in a room without a
primary gets it. Every other join, including a concurrent second claim, is
told ``isPrimary: false``. Joins are handled on one event loop without
awaiting between the check and the claim, so two claims can never both win.

Usage:
    crew-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Set

import websockets

from crew_rtc.protocol import (
    MSG_ERROR,
    MSG_JOIN_ROOM,
    MSG_NEW_PEER,
    MSG_PEER_DISCONNECTED,
    MSG_PRIMARY_DISCONNECTED,
    MSG_ROLE_ASSIGNED,
    RELAY_PAYLOAD_KEYS,
    RELAYED_MESSAGES,
    format_message,
    parse_message,
)

if TYPE_CHECKING:
    from websockets.asyncio.server import ServerConnection

logger = logging.getLogger(__name__)


@dataclass
class Room:
    """Relay-side room record.

    Attributes:
        room_id: Opaque room id chosen by the clients.
        peers: Ids of the connections currently in the room.
        primary_id: Id of the room's primary, if any.
    """

    room_id: str
    peers: Set[str] = field(default_factory=set)
    primary_id: Optional[str] = None


class RelayServer:
    """Room registry and message forwarding for relay connections."""

    def __init__(self):
        self.connections: Dict[str, "ServerConnection"] = {}
        self.rooms: Dict[str, Room] = {}
        self.peer_rooms: Dict[str, str] = {}

    async def handler(self, websocket: "ServerConnection"):
        """Handle one client connection for its whole lifetime."""
        peer_id = uuid.uuid4().hex
        self.connections[peer_id] = websocket
        logger.info(f"New relay connection: {peer_id} (total: {len(self.connections)})")

        try:
            async for message in websocket:
                try:
                    msg_type, data = parse_message(message)
                except ValueError as e:
                    logger.warning(f"Invalid message from {peer_id}: {e}")
                    await self._send(peer_id, MSG_ERROR, reason=f"Invalid message: {e}")
                    continue

                if msg_type == MSG_JOIN_ROOM:
                    await self._handle_join(peer_id, data)
                elif msg_type in RELAYED_MESSAGES:
                    await self._handle_forward(peer_id, msg_type, data)
                else:
                    logger.warning(f"Unknown message type from {peer_id}: {msg_type}")
                    await self._send(
                        peer_id, MSG_ERROR, reason=f"Unknown message type: {msg_type}"
                    )

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            del self.connections[peer_id]
            await self._leave_room(peer_id)
            logger.info(f"Removed peer: {peer_id} (remaining: {len(self.connections)})")

    def assign_role(self, peer_id: str, room_id: str, request_primary: bool) -> bool:
        """Add ``peer_id`` to ``room_id`` and decide its role.

        Returns:
            True if ``peer_id`` became the room's primary.
        """
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self.rooms[room_id] = room
            logger.info(f"Created room {room_id}")

        room.peers.add(peer_id)
        self.peer_rooms[peer_id] = room_id

        if request_primary and room.primary_id is None:
            room.primary_id = peer_id
            return True
        return False

    def room_peers(self, room_id: str, exclude: Optional[str] = None) -> List[str]:
        room = self.rooms.get(room_id)
        if room is None:
            return []
        return sorted(pid for pid in room.peers if pid != exclude)

    async def _handle_join(self, peer_id: str, data: dict):
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            await self._send(peer_id, MSG_ERROR, reason="join-room requires a roomId")
            return

        # A connection is in at most one room; switching rooms leaves the old one.
        if peer_id in self.peer_rooms:
            await self._leave_room(peer_id)

        request_primary = bool(data.get("requestPrimary", False))
        is_primary = self.assign_role(peer_id, room_id, request_primary)
        logger.info(
            f"Peer {peer_id} joined room {room_id} "
            f"(requested primary: {request_primary}, granted: {is_primary})"
        )

        await self._send(
            peer_id,
            MSG_ROLE_ASSIGNED,
            isPrimary=is_primary,
            roomId=room_id,
            peerId=peer_id,
            peers=self.room_peers(room_id, exclude=peer_id),
        )

        primary_id = self.rooms[room_id].primary_id
        if not is_primary and primary_id is not None:
            await self._send(primary_id, MSG_NEW_PEER, peerId=peer_id, roomId=room_id)

    async def _handle_forward(self, peer_id: str, msg_type: str, data: dict):
        target = data.get("targetId")
        if target not in self.connections:
            logger.warning(f"Target peer not found for {msg_type}: {target}")
            return

        payload_key, sender_key = RELAY_PAYLOAD_KEYS[msg_type]
        payload = {payload_key: data.get(payload_key), sender_key: peer_id}
        await self._send(target, msg_type, **payload)
        logger.info(f"Forwarded {msg_type} from {peer_id} to {target}")

    async def _leave_room(self, peer_id: str):
        room_id = self.peer_rooms.pop(peer_id, None)
        if room_id is None:
            return
        room = self.rooms.get(room_id)
        if room is None:
            return

        room.peers.discard(peer_id)
        was_primary = room.primary_id == peer_id
        if was_primary:
            room.primary_id = None

        for other in sorted(room.peers):
            await self._send(other, MSG_PEER_DISCONNECTED, peerId=peer_id)
            if was_primary:
                await self._send(other, MSG_PRIMARY_DISCONNECTED)

        if not room.peers:
            del self.rooms[room_id]
            logger.info(f"Room {room_id} is empty; removed")

    async def _send(self, peer_id: str, msg_type: str, **payload):
        websocket = self.connections.get(peer_id)
        if websocket is None:
            return
        try:
            await websocket.send(format_message(msg_type, **payload))
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Could not deliver {msg_type} to {peer_id}: connection closed")


async def serve(host: str = "localhost", port: int = 8080, relay: Optional[RelayServer] = None):
    """Run a relay server until cancelled."""
    relay = relay or RelayServer()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Relay server running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
