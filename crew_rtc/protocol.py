"""Message protocol definitions for crew-rtc.

This module defines the message names exchanged with the relay (signaling)
server and the parameters of the game-state data channel.

Message Protocol Overview
-------------------------

crew-rtc uses two transports:

1. **Relay websocket**: JSON text frames ``{"type": <name>, ...payload}``. Used
   only for room membership and connection setup. The relay never sees game
   state.
2. **WebRTC data channel**: one channel per peer pair, labeled ``gameState``,
   unordered with zero retransmits. Carries UTF-8 JSON snapshots (see
   ``crew_rtc.snapshot``).

Relay Messages
--------------

**join-room {roomId, requestPrimary}**
    Sent by: Client
    Purpose: Join a room and ask to be its primary (captain)

**role-assigned {isPrimary, roomId, peerId, peers}**
    Sent by: Relay
    Purpose: Exactly one per join. ``peerId`` is the id the relay gave this
    connection, ``peers`` the ids already in the room.

**new-peer {peerId, roomId}**
    Sent by: Relay, to the room's primary
    Purpose: A secondary joined; the primary should send it an offer

**offer {targetId, offer}** -> delivered as **offer {offer, offererId}**
**answer {targetId, answer}** -> delivered as **answer {answer, answererId}**
**ice-candidate {targetId, candidate}** -> delivered as
**ice-candidate {candidate, senderId}**
    Sent by: Either peer, forwarded verbatim by the relay

**peer-disconnected {peerId}**
    Sent by: Relay, to every remaining member of the room

**primary-disconnected {}**
    Sent by: Relay, to every remaining member when the primary leaves

**error {reason}**
    Sent by: Relay, in response to a malformed request

Message Flow
------------

1. Captain → Relay: join-room {roomId: "room1", requestPrimary: true}
2. Relay → Captain: role-assigned {isPrimary: true}
3. Crew → Relay: join-room {roomId: "room1", requestPrimary: false}
4. Relay → Crew: role-assigned {isPrimary: false, peers: [captain]}
5. Relay → Captain: new-peer {peerId: crew}
6. Captain → Crew: offer / ice-candidate (via relay)
7. Crew → Captain: answer / ice-candidate (via relay)
8. Captain → Crew: snapshots over the gameState data channel, ~30 Hz
"""

import json
from typing import Any, Dict, Tuple

# Client -> relay
MSG_JOIN_ROOM = "join-room"

# Relay -> client
MSG_ROLE_ASSIGNED = "role-assigned"
MSG_NEW_PEER = "new-peer"
MSG_PEER_DISCONNECTED = "peer-disconnected"
MSG_PRIMARY_DISCONNECTED = "primary-disconnected"
MSG_ERROR = "error"

# Peer -> peer through the relay
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"

RELAYED_MESSAGES = (MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE)

# Payload key carrying the SDP/candidate for each relayed message, and the key
# the relay stamps with the sender's id on delivery.
RELAY_PAYLOAD_KEYS = {
    MSG_OFFER: ("offer", "offererId"),
    MSG_ANSWER: ("answer", "answererId"),
    MSG_ICE_CANDIDATE: ("candidate", "senderId"),
}

# Data channel
GAME_STATE_CHANNEL_LABEL = "gameState"
GAME_STATE_CHANNEL_ORDERED = False
GAME_STATE_CHANNEL_MAX_RETRANSMITS = 0


def format_message(msg_type: str, **payload: Any) -> str:
    """Build a relay message.

    Args:
        msg_type: Message name, e.g. ``MSG_JOIN_ROOM``.
        **payload: Message fields, already in wire (camelCase) form.

    Returns:
        JSON text frame.
    """
    return json.dumps({"type": msg_type, **payload})


def parse_message(message) -> Tuple[str, Dict[str, Any]]:
    """Parse a relay message into its type and payload.

    Args:
        message: Text (or UTF-8 bytes) frame received from the websocket.

    Returns:
        Tuple of (message type, payload without the ``type`` key).

    Raises:
        ValueError: If the frame is not a JSON object with a string ``type``.
    """
    if isinstance(message, bytes):
        message = message.decode("utf-8")
    data = json.loads(message)
    if not isinstance(data, dict):
        raise ValueError("Relay message must be a JSON object")
    msg_type = data.pop("type", None)
    if not isinstance(msg_type, str):
        raise ValueError("Relay message is missing a 'type'")
    return msg_type, data
