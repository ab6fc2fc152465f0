"""Tests for the relay server, over real websocket connections."""

import asyncio
import json

import pytest
import websockets

from crew_rtc.relay import RelayServer


async def _recv(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def _join(ws, room_id, request_primary):
    await ws.send(
        json.dumps({"type": "join-room", "roomId": room_id, "requestPrimary": request_primary})
    )
    reply = await _recv(ws)
    assert reply["type"] == "role-assigned"
    return reply


# ── Role arbitration ─────────────────────────────────────────────────────────


class TestAssignRole:
    def test_first_primary_claim_wins(self):
        relay = RelayServer()
        assert relay.assign_role("a", "room1", request_primary=True) is True
        assert relay.assign_role("b", "room1", request_primary=True) is False
        assert relay.rooms["room1"].primary_id == "a"

    def test_non_claim_never_becomes_primary(self):
        relay = RelayServer()
        assert relay.assign_role("a", "room1", request_primary=False) is False
        assert relay.rooms["room1"].primary_id is None

    def test_rooms_are_independent(self):
        relay = RelayServer()
        assert relay.assign_role("a", "room1", request_primary=True)
        assert relay.assign_role("b", "room2", request_primary=True)

    def test_room_peers_excludes_self(self):
        relay = RelayServer()
        relay.assign_role("a", "room1", False)
        relay.assign_role("b", "room1", False)
        assert relay.room_peers("room1", exclude="a") == ["b"]
        assert relay.room_peers("nope") == []


class TestJoinRoom:
    @pytest.mark.asyncio
    async def test_captain_then_crew(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as captain, websockets.connect(url) as crew:
                captain_role = await _join(captain, "room1", True)
                assert captain_role["isPrimary"] is True
                assert captain_role["roomId"] == "room1"
                assert captain_role["peers"] == []

                crew_role = await _join(crew, "room1", False)
                assert crew_role["isPrimary"] is False
                assert crew_role["peers"] == [captain_role["peerId"]]

                new_peer = await _recv(captain)
                assert new_peer == {
                    "type": "new-peer",
                    "peerId": crew_role["peerId"],
                    "roomId": "room1",
                }

    @pytest.mark.asyncio
    async def test_concurrent_primary_claims(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                replies = await asyncio.gather(_join(a, "room1", True), _join(b, "room1", True))
                assert sorted(r["isPrimary"] for r in replies) == [False, True]

    @pytest.mark.asyncio
    async def test_late_captain_sees_waiting_crew(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as crew, websockets.connect(url) as captain:
                crew_role = await _join(crew, "room1", False)
                captain_role = await _join(captain, "room1", True)
                assert captain_role["isPrimary"] is True
                assert captain_role["peers"] == [crew_role["peerId"]]

    @pytest.mark.asyncio
    async def test_missing_room_id_is_an_error(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps({"type": "join-room"}))
                reply = await _recv(ws)
                assert reply["type"] == "error"
                assert relay.rooms == {}

    @pytest.mark.asyncio
    async def test_invalid_and_unknown_messages(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as ws:
                await ws.send("not json")
                assert (await _recv(ws))["type"] == "error"
                await ws.send(json.dumps({"type": "teleport"}))
                reply = await _recv(ws)
                assert reply["type"] == "error"
                assert "teleport" in reply["reason"]


# ── Forwarding ───────────────────────────────────────────────────────────────


class TestForwarding:
    @pytest.mark.asyncio
    async def test_offer_answer_and_candidate_are_stamped_with_sender(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as captain, websockets.connect(url) as crew:
                captain_id = (await _join(captain, "room1", True))["peerId"]
                crew_id = (await _join(crew, "room1", False))["peerId"]
                await _recv(captain)  # new-peer

                offer = {"sdp": "v=0", "type": "offer"}
                await captain.send(
                    json.dumps({"type": "offer", "targetId": crew_id, "offer": offer})
                )
                assert await _recv(crew) == {
                    "type": "offer",
                    "offer": offer,
                    "offererId": captain_id,
                }

                answer = {"sdp": "v=0", "type": "answer"}
                await crew.send(
                    json.dumps({"type": "answer", "targetId": captain_id, "answer": answer})
                )
                assert (await _recv(captain))["answererId"] == crew_id

                candidate = {"candidate": "candidate:1 1 udp 1 1.2.3.4 5 typ host"}
                await crew.send(
                    json.dumps(
                        {"type": "ice-candidate", "targetId": captain_id, "candidate": candidate}
                    )
                )
                delivered = await _recv(captain)
                assert delivered["candidate"] == candidate
                assert delivered["senderId"] == crew_id


# ── Disconnects ──────────────────────────────────────────────────────────────


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_crew_leaving_notifies_captain(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as captain:
                await _join(captain, "room1", True)
                async with websockets.connect(url) as crew:
                    crew_id = (await _join(crew, "room1", False))["peerId"]
                    await _recv(captain)  # new-peer

                assert await _recv(captain) == {
                    "type": "peer-disconnected",
                    "peerId": crew_id,
                }
                assert relay.rooms["room1"].primary_id is not None

    @pytest.mark.asyncio
    async def test_captain_leaving_frees_primary(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as crew:
                async with websockets.connect(url) as captain:
                    captain_id = (await _join(captain, "room1", True))["peerId"]
                    await _join(crew, "room1", False)

                assert await _recv(crew) == {
                    "type": "peer-disconnected",
                    "peerId": captain_id,
                }
                assert await _recv(crew) == {"type": "primary-disconnected"}
                assert relay.rooms["room1"].primary_id is None

                async with websockets.connect(url) as new_captain:
                    assert (await _join(new_captain, "room1", True))["isPrimary"] is True

    @pytest.mark.asyncio
    async def test_empty_room_is_removed(self, relay_server):
        async with relay_server() as (relay, url):
            async with websockets.connect(url) as ws:
                await _join(ws, "room1", True)
            for _ in range(50):
                if not relay.rooms:
                    break
                await asyncio.sleep(0.01)
            assert relay.rooms == {}
            assert relay.connections == {}
