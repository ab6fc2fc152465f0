"""Per-peer WebRTC connection and data channel lifecycle.

The PeerConnectionManager owns exactly one RTCPeerConnection and at most one
RTCDataChannel per remote peer id, wrapped in a PeerLink. Each link moves
through ``new -> connecting -> open -> closed``; ``closed`` is terminal and the
link is removed from the registry when it gets there.

Roles decide who does what:
- Primary: on ``peer-joined`` creates the link and the ``gameState`` channel,
  then sends an offer.
- Secondary: on ``offer`` creates the link, answers, and accepts the channel
  the primary created.

Negotiation failures abandon the affected link only. There is no automatic
renegotiation; the peer has to rejoin the room.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from crew_rtc.exceptions import PeerNegotiationFailure
from crew_rtc.protocol import (
    GAME_STATE_CHANNEL_LABEL,
    GAME_STATE_CHANNEL_MAX_RETRANSMITS,
    GAME_STATE_CHANNEL_ORDERED,
)

if TYPE_CHECKING:
    from crew_rtc.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class PeerLink:
    """Connection state for one remote peer.

    Attributes:
        peer_id: Relay id of the remote peer.
        pc: Transport connection, owned by the manager.
        channel: Game state data channel once created or accepted.
        state: Lifecycle state.
    """

    peer_id: str
    pc: RTCPeerConnection
    channel: Optional[RTCDataChannel] = None
    state: LinkState = LinkState.NEW

    @property
    def is_open(self) -> bool:
        return (
            self.state == LinkState.OPEN
            and self.channel is not None
            and self.channel.readyState == "open"
        )


def candidate_to_dict(candidate) -> dict:
    """Convert an aiortc candidate to the browser's RTCIceCandidateInit shape."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict):
    """Parse a browser RTCIceCandidateInit dict into an aiortc candidate."""
    sdp = data["candidate"]
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerConnectionManager:
    """Creates, negotiates and tears down one PeerLink per remote peer.

    All methods are called from the session's event loop, so the registry needs
    no locking, but every entry point checks for an existing link before
    creating one.

    Attributes:
        signaling: Channel used to relay offers, answers and ICE candidates.
        is_primary: Whether this session creates data channels and offers.
        ice_servers: ICE server dicts passed to every RTCPeerConnection.
        links: peer_id -> PeerLink.
    """

    def __init__(
        self,
        signaling: "SignalingChannel",
        is_primary: bool,
        ice_servers: Optional[List[dict]] = None,
        on_message: Optional[Callable[[str, object], None]] = None,
        on_open: Optional[Callable[[str], None]] = None,
    ):
        """Initialize PeerConnectionManager.

        Args:
            signaling: Connected SignalingChannel.
            is_primary: True on the primary (captain) session.
            ice_servers: ICE server dicts (``{"urls": ...}``); ``None`` or empty
                uses host candidates only.
            on_message: Called with ``(peer_id, message)`` for every data channel
                message.
            on_open: Called with ``peer_id`` when a link's channel opens.
        """
        self.signaling = signaling
        self.is_primary = is_primary
        self.ice_servers = ice_servers or []
        self.on_message = on_message
        self.on_open = on_open
        self.links: Dict[str, PeerLink] = {}

    # ===== RTCPeerConnection factory =====

    def _create_peer_connection(self) -> RTCPeerConnection:
        """Create RTCPeerConnection with the configured ICE servers."""
        ice_server_objects = [RTCIceServer(**server) for server in self.ice_servers]
        # An explicit empty list keeps aiortc from falling back to its default STUN server.
        config = RTCConfiguration(iceServers=ice_server_objects)
        return RTCPeerConnection(configuration=config)

    def _create_link(self, peer_id: str) -> PeerLink:
        pc = self._create_peer_connection()
        link = PeerLink(peer_id=peer_id, pc=pc)
        self.links[peer_id] = link

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None:
                return
            await self.signaling.send_ice_candidate(peer_id, candidate_to_dict(candidate))
            logger.debug(f"Sent ICE candidate to {peer_id}")

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = pc.connectionState
            logger.info(f"Connection state with {peer_id}: {state}")
            if state == "failed" and self.links.get(peer_id) is link:
                logger.error(f"Connection with {peer_id} failed; abandoning link")
                await self.close_link(peer_id)

        if not self.is_primary:

            @pc.on("datachannel")
            def on_datachannel(channel):
                logger.info(f"Received data channel '{channel.label}' from {peer_id}")
                self._setup_data_channel(link, channel)

        logger.info(f"Created peer link for {peer_id}")
        return link

    def _setup_data_channel(self, link: PeerLink, channel: RTCDataChannel):
        """Attach handlers to the game state channel of ``link``."""
        peer_id = link.peer_id
        link.channel = channel

        @channel.on("open")
        def on_open():
            self._mark_open(link)

        @channel.on("close")
        def on_close():
            logger.warning(f"Data channel closed with {peer_id}")
            if link.state != LinkState.CLOSED:
                link.channel = None

        @channel.on("error")
        def on_error(error):
            logger.error(f"Data channel error with {peer_id}: {error}")

        @channel.on("message")
        def on_message(message):
            if self.on_message is not None:
                self.on_message(peer_id, message)

        # A channel accepted from the remote side may already be open.
        if channel.readyState == "open":
            self._mark_open(link)

    def _mark_open(self, link: PeerLink):
        if link.state in (LinkState.OPEN, LinkState.CLOSED):
            return
        link.state = LinkState.OPEN
        logger.info(f"Data channel open with {link.peer_id}")
        if self.on_open is not None:
            self.on_open(link.peer_id)

    def _abandon(self, failure: PeerNegotiationFailure):
        logger.error(f"{failure}; abandoning link")

    # ===== Signaling event handlers =====

    async def handle_peer_joined(self, peer_id: str):
        """Primary: create a link to a new secondary and send it an offer."""
        if not self.is_primary:
            logger.debug(f"Ignoring peer-joined for {peer_id}: not primary")
            return
        if peer_id in self.links:
            logger.debug(f"Ignoring duplicate peer-joined for {peer_id}")
            return

        link = self._create_link(peer_id)
        link.state = LinkState.CONNECTING
        channel = link.pc.createDataChannel(
            GAME_STATE_CHANNEL_LABEL,
            ordered=GAME_STATE_CHANNEL_ORDERED,
            maxRetransmits=GAME_STATE_CHANNEL_MAX_RETRANSMITS,
        )
        self._setup_data_channel(link, channel)

        step = "createOffer"
        try:
            offer = await link.pc.createOffer()
            step = "setLocalDescription"
            await link.pc.setLocalDescription(offer)
        except Exception as e:
            self._abandon(PeerNegotiationFailure(peer_id, step, e))
            await self.close_link(peer_id)
            return

        if self.links.get(peer_id) is not link:
            logger.info(f"Link to {peer_id} was closed during negotiation")
            return

        await self.signaling.send_offer(
            peer_id,
            {"sdp": link.pc.localDescription.sdp, "type": link.pc.localDescription.type},
        )
        logger.info(f"Sent offer to {peer_id}")

    async def handle_offer(self, peer_id: str, offer: dict):
        """Secondary: accept an offer and answer it."""
        if self.is_primary:
            logger.warning(f"Ignoring offer from {peer_id}: this session is primary")
            return

        link = self.links.get(peer_id)
        if link is None:
            link = self._create_link(peer_id)
        if link.state == LinkState.NEW:
            link.state = LinkState.CONNECTING

        step = "setRemoteDescription"
        try:
            await link.pc.setRemoteDescription(
                RTCSessionDescription(sdp=offer["sdp"], type=offer.get("type", "offer"))
            )
            step = "createAnswer"
            answer = await link.pc.createAnswer()
            step = "setLocalDescription"
            await link.pc.setLocalDescription(answer)
        except Exception as e:
            self._abandon(PeerNegotiationFailure(peer_id, step, e))
            await self.close_link(peer_id)
            return

        if self.links.get(peer_id) is not link:
            logger.info(f"Link to {peer_id} was closed during negotiation")
            return

        await self.signaling.send_answer(
            peer_id,
            {"sdp": link.pc.localDescription.sdp, "type": link.pc.localDescription.type},
        )
        logger.info(f"Sent answer to {peer_id}")

    async def handle_answer(self, peer_id: str, answer: dict):
        """Primary: apply the secondary's answer to our offer."""
        link = self.links.get(peer_id)
        if link is None:
            logger.warning(f"Received answer from unknown peer: {peer_id}")
            return

        try:
            await link.pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer["sdp"], type=answer.get("type", "answer"))
            )
        except Exception as e:
            self._abandon(PeerNegotiationFailure(peer_id, "setRemoteDescription", e))
            await self.close_link(peer_id)
            return
        logger.info(f"Applied answer from {peer_id}")

    async def handle_ice_candidate(self, peer_id: str, candidate: dict):
        """Apply a trickled ICE candidate from ``peer_id``."""
        link = self.links.get(peer_id)
        if link is None:
            logger.warning(f"Received ICE candidate for unknown peer: {peer_id}")
            return
        if not candidate or not candidate.get("candidate"):
            logger.debug(f"End of ICE candidates from {peer_id}")
            return

        try:
            await link.pc.addIceCandidate(candidate_from_dict(candidate))
        except Exception as e:
            # A bad candidate is not fatal; other candidates may still succeed.
            logger.error(f"Failed to add ICE candidate from {peer_id}: {e}")
            return
        logger.debug(f"Added ICE candidate from {peer_id}")

    async def handle_peer_disconnected(self, peer_id: str):
        await self.close_link(peer_id)

    # ===== Teardown =====

    async def close_link(self, peer_id: str):
        """Release everything held for ``peer_id``. Idempotent."""
        link = self.links.pop(peer_id, None)
        if link is None:
            return

        link.state = LinkState.CLOSED
        channel, link.channel = link.channel, None
        if channel is not None and channel.readyState != "closed":
            channel.close()
        await link.pc.close()
        logger.info(f"Closed link to {peer_id}")

    async def close_all(self):
        """Close every link."""
        for peer_id in list(self.links):
            await self.close_link(peer_id)

    # ===== Queries =====

    def open_channels(self) -> Dict[str, RTCDataChannel]:
        """Return peer_id -> channel for every link whose channel is open."""
        return {
            peer_id: link.channel
            for peer_id, link in self.links.items()
            if link.is_open
        }

    def get(self, peer_id: str) -> Optional[PeerLink]:
        return self.links.get(peer_id)
