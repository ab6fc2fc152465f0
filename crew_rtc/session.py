"""Multiplayer state synchronization session.

A SyncSession ties the pieces together for one game session:

1. SignalingChannel connects to the relay.
2. SessionRoleResolver joins the room and learns whether we are primary.
3. PeerConnectionManager builds one link per remote peer, driven by the
   signaling events this session dispatches.
4. The primary runs a StateBroadcaster; a secondary runs a StateReceiver.

The session is an explicit object: construct it with a Config, pass it to
whatever owns the game, and call ``dispose()`` when the game ends. Relay and
peer failures never raise into the game loop; they degrade to "multiplayer
unavailable".
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Union

from crew_rtc.broadcaster import CollectState, StateBroadcaster
from crew_rtc.config import Config, get_config
from crew_rtc.exceptions import SignalingUnavailable
from crew_rtc.peers import PeerConnectionManager
from crew_rtc.receiver import StateReceiver
from crew_rtc.roles import RoleAssignment, SessionRoleResolver
from crew_rtc.signaling import (
    EVENT_ANSWER,
    EVENT_CONNECTED,
    EVENT_CONNECTION_ERROR,
    EVENT_DISCONNECTED,
    EVENT_ICE_CANDIDATE,
    EVENT_OFFER,
    EVENT_PEER_DISCONNECTED,
    EVENT_PEER_JOINED,
    EVENT_PRIMARY_DISCONNECTED,
    SignalingChannel,
    SignalingEvent,
)
from crew_rtc.snapshot import GameStateSnapshot

logger = logging.getLogger(__name__)


class SyncSession:
    """Owns signaling, role, peer links and state flow for one game session.

    Attributes:
        config: Config with relay URL and sync settings.
        signaling: Relay connection.
        resolver: Joins rooms and records role assignments.
        assignment: Current RoleAssignment, None until joined.
        peers: PeerConnectionManager for the current assignment.
        broadcaster: StateBroadcaster when primary, else None.
        receiver: StateReceiver when secondary, else None.
        on_state_received: Game callback invoked with every accepted snapshot.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        signaling: Optional[SignalingChannel] = None,
    ):
        self.config = config or get_config()
        self.signaling = signaling or SignalingChannel(self.config)
        self.resolver = SessionRoleResolver(self.signaling)

        self.room_id: Optional[str] = None
        self.request_primary = False
        self.assignment: Optional[RoleAssignment] = None
        self.peers: Optional[PeerConnectionManager] = None
        self.broadcaster: Optional[StateBroadcaster] = None
        self.receiver: Optional[StateReceiver] = None

        self.collect_state: Optional[CollectState] = None
        self.on_state_received: Optional[Callable[[GameStateSnapshot], None]] = None
        self.primary_connected = False

        self._dispatch_task: Optional[asyncio.Task] = None
        self._broadcast_task: Optional[asyncio.Task] = None
        self._peer_tasks: Dict[str, asyncio.Task] = {}
        self._needs_rejoin = False
        self._disposed = False

    async def __aenter__(self) -> "SyncSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.dispose()

    @property
    def is_primary(self) -> bool:
        return self.assignment is not None and self.assignment.is_primary

    @property
    def role(self) -> str:
        if self.assignment is None:
            return "Unknown"
        return self.assignment.role

    async def start(
        self,
        room_id: str,
        request_primary: bool = False,
        collect_state: Optional[CollectState] = None,
        on_state_received: Optional[Callable[[GameStateSnapshot], None]] = None,
        url: Optional[str] = None,
    ) -> bool:
        """Connect to the relay, join ``room_id`` and start synchronizing.

        Args:
            room_id: Room (game) id shared by captain and crew.
            request_primary: Role hint from the session manager.
            collect_state: Primary: returns the snapshot to broadcast each tick,
                or None when there is no game.
            on_state_received: Secondary: called with every accepted snapshot.
            url: Relay URL overriding the configured one.

        Returns:
            True if the room was joined, False if multiplayer is unavailable.

        Raises:
            AlreadyJoined: If this session already joined ``room_id``.
        """
        if not room_id:
            logger.error("Room ID is required")
            return False

        self.room_id = room_id
        self.request_primary = request_primary
        if collect_state is not None:
            self.collect_state = collect_state
        if on_state_received is not None:
            self.on_state_received = on_state_received

        try:
            if not self.signaling.connected:
                await self.signaling.connect(url)
        except SignalingUnavailable as e:
            logger.error(f"Multiplayer unavailable, continuing single-player: {e}")
            return False

        try:
            # Peer events queue up until the role is known.
            await self._join()
        except SignalingUnavailable as e:
            logger.error(f"Multiplayer unavailable, continuing single-player: {e}")
            # Leaving the relay drops any role it granted after we stopped waiting.
            await self.signaling.close()
            return False

        self._start_dispatch()
        return True

    async def _join(self):
        previous = self.assignment
        if previous is not None and previous.room_id != self.room_id:
            logger.info(f"Leaving room {previous.room_id} for room {self.room_id}")
            await self._leave_role(previous)

        assignment = await self.resolver.resolve(self.room_id, self.request_primary)
        self._activate_role(assignment)

    async def _leave_role(self, assignment: RoleAssignment):
        """Tear down everything held for ``assignment``'s room."""
        await self._deactivate_role()
        self.resolver.forget(assignment.room_id)
        self.assignment = None
        self.peers = None
        self.broadcaster = None
        self.receiver = None
        self.primary_connected = False

    def _activate_role(self, assignment: RoleAssignment):
        """Build the peer manager and the role's state component."""
        self.assignment = assignment
        self.peers = PeerConnectionManager(
            self.signaling,
            is_primary=assignment.is_primary,
            ice_servers=self.config.sync.ice_servers,
            on_message=self._on_channel_message,
        )

        if assignment.is_primary:
            self.receiver = None
            self.broadcaster = StateBroadcaster(
                self.peers,
                collect_state=self.collect_state,
                interval=self.config.sync.broadcast_interval,
            )
            if self.collect_state is not None:
                self._broadcast_task = asyncio.create_task(self.broadcaster.run())
            # Secondaries that were in the room before we claimed it
            for peer_id in assignment.peers:
                self._schedule(peer_id, self.peers.handle_peer_joined, peer_id)
        else:
            self.broadcaster = None
            self.receiver = StateReceiver()
            self.receiver.add_callback(self._deliver_state)
            self.primary_connected = False

    async def _deactivate_role(self):
        """Stop broadcasting and close every peer link."""
        if self._broadcast_task and not self._broadcast_task.done():
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
        self._broadcast_task = None

        for task in list(self._peer_tasks.values()):
            task.cancel()
        self._peer_tasks.clear()

        if self.peers is not None:
            await self.peers.close_all()

    # ===== Event dispatch =====

    def _start_dispatch(self):
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    async def _dispatch_loop(self):
        """Process signaling events one at a time, in arrival order."""
        while True:
            event = await self.signaling.events.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"Error handling signaling event {event.name}: {e}")

    async def _dispatch(self, event: SignalingEvent):
        name = event.name

        if name == EVENT_CONNECTED:
            if self._needs_rejoin:
                self._needs_rejoin = False
                logger.info(f"Relay reconnected; rejoining room {self.room_id}")
                self.resolver.forget(self.room_id)
                try:
                    await self._join()
                except SignalingUnavailable as e:
                    logger.error(f"Rejoin failed: {e}")

        elif name == EVENT_CONNECTION_ERROR:
            logger.debug(f"Relay connection error: {event.payload}")

        elif name == EVENT_DISCONNECTED:
            if self.assignment is not None:
                self._needs_rejoin = True
                await self._deactivate_role()

        elif self.peers is None:
            logger.warning(f"Ignoring {name} before role assignment")

        elif name == EVENT_PEER_JOINED:
            self._schedule(event.peer_id, self.peers.handle_peer_joined, event.peer_id)

        elif name == EVENT_OFFER:
            self.primary_connected = True
            self._schedule(
                event.peer_id, self.peers.handle_offer, event.peer_id, event.payload
            )

        elif name == EVENT_ANSWER:
            self._schedule(
                event.peer_id, self.peers.handle_answer, event.peer_id, event.payload
            )

        elif name == EVENT_ICE_CANDIDATE:
            self._schedule(
                event.peer_id,
                self.peers.handle_ice_candidate,
                event.peer_id,
                event.payload,
            )

        elif name == EVENT_PEER_DISCONNECTED:
            # Not chained behind pending work: abandoning a link is immediate.
            logger.info(f"Peer disconnected: {event.peer_id}")
            await self.peers.handle_peer_disconnected(event.peer_id)

        elif name == EVENT_PRIMARY_DISCONNECTED:
            logger.warning(f"Primary left room {self.room_id}")
            self.primary_connected = False

    def _schedule(self, peer_id: str, handler, *args):
        """Run ``handler(*args)`` after any earlier work for the same peer.

        Work for different peers runs concurrently, so one stalled handshake
        does not hold up the others.
        """
        previous = self._peer_tasks.get(peer_id)

        async def run():
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            try:
                await handler(*args)
            except Exception as e:
                logger.error(f"Error handling signaling for {peer_id}: {e}")

        task = asyncio.create_task(run())
        self._peer_tasks[peer_id] = task

        def forget(done_task):
            if self._peer_tasks.get(peer_id) is done_task:
                del self._peer_tasks[peer_id]

        task.add_done_callback(forget)

    # ===== State flow =====

    def _on_channel_message(self, peer_id: str, message):
        if self.receiver is None:
            logger.debug(f"Ignoring data channel message from {peer_id}: primary")
            return
        self.receiver.handle_message(message)

    def _deliver_state(self, snapshot: GameStateSnapshot, count: int, latency_ms: int):
        if self.on_state_received is None:
            logger.error("No game state handler registered")
            return
        self.on_state_received(snapshot)

    def send_game_state(self, state: Union[GameStateSnapshot, dict]) -> int:
        """Primary: send ``state`` to every open peer right away.

        Returns:
            Number of peers written to; 0 on a secondary or with no peers.
        """
        if self.broadcaster is None:
            return 0
        return self.broadcaster.send(state)

    def tick(self) -> int:
        """Primary: run one broadcast tick (for hosts that drive their own loop)."""
        if self.broadcaster is None:
            return 0
        return self.broadcaster.tick()

    def status(self) -> dict:
        """Read-only debug fields for a status display."""
        open_channels = len(self.peers.open_channels()) if self.peers else 0
        record = self.receiver.record if self.receiver else None
        snapshot = record.last_snapshot if record else None
        return {
            "connectionStatus": self.signaling.status,
            "role": self.role,
            "roomId": self.room_id,
            "peerId": self.assignment.peer_id if self.assignment else None,
            "peers": len(self.peers.links) if self.peers else 0,
            "openChannels": open_channels,
            "stateUpdates": {
                "count": record.received_count if record else 0,
                "latency": record.latency_ms if record else 0,
            },
            "objects": {
                key: len(getattr(snapshot, key) or []) if snapshot else 0
                for key in ("asteroids", "bullets", "ores")
            },
        }

    async def dispose(self):
        """Tear down peers, stop background tasks and close the relay connection."""
        if self._disposed:
            return
        self._disposed = True

        await self._deactivate_role()

        if self._dispatch_task and not self._dispatch_task.done():
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        self._dispatch_task = None

        await self.signaling.close()
        logger.info("Sync session disposed")
