"""Tests for the signaling relay."""

import asyncio
import random

import pytest
from conftest import OpenSocket, send

from callbridge.signaling.relay import SignalingRelay


async def _registered(relay: SignalingRelay, open_socket: OpenSocket, user_id: str):
    connection_id, ws = await open_socket()
    await send(relay, connection_id, "register", userId=user_id, agentId=user_id)
    ws.clear()
    return connection_id, ws


class TestRegister:
    """Tests for the register message."""

    @pytest.mark.asyncio
    async def test_register_acknowledges_with_socket_id(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test register replies with the connection id."""
        connection_id, ws = await open_socket()

        await send(relay, connection_id, "register", userId="alice", extension="1001")

        [event] = ws.events("registered")
        assert event["data"] == {"socketId": connection_id, "success": True}
        assert event["timestamp"].endswith("Z")
        profile = relay.registry.get_profile(connection_id)
        assert profile is not None
        assert profile.user_id == "alice"
        assert profile.extension == "1001"

    @pytest.mark.asyncio
    async def test_register_twice_last_write_wins(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test re-registering replaces the profile."""
        connection_id, _ = await open_socket()

        await send(relay, connection_id, "register", userId="alice")
        await send(relay, connection_id, "register", userId="alice-2")

        assert relay.registry.user_id_of(connection_id) == "alice-2"


class TestJoinAndLeave:
    """Tests for room membership."""

    @pytest.mark.asyncio
    async def test_first_join_creates_room(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test the first joiner gets an empty user list."""
        a, ws_a = await _registered(relay, open_socket, "alice")

        await send(relay, a, "join-room", roomId="R1", userId="alice")

        [event] = ws_a.events("room-users")
        assert event["data"]["users"] == []
        assert relay.rooms.exists("R1")
        assert relay.rooms.members("R1") == [a]
        assert relay.stats.total_calls == 1

    @pytest.mark.asyncio
    async def test_second_join_notifies_both_sides(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test the joiner learns the members and the members learn the joiner."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, ws_b = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        ws_a.clear()

        await send(relay, b, "join-room", roomId="R1")

        assert ws_a.events() == ws_a.events("user-joined")
        [joined] = ws_a.events("user-joined")
        assert joined["data"] == {"socketId": b, "userId": "bob"}
        [users] = ws_b.events("room-users")
        assert users["data"]["users"] == [{"socketId": a, "userId": "alice"}]
        assert ws_b.events("user-joined") == []
        assert relay.stats.total_calls == 1

    @pytest.mark.asyncio
    async def test_unregistered_user_id_falls_back_to_socket_id(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a connection that never registered is announced by its socket id."""
        a, ws_a = await open_socket()
        b, _ = await open_socket()
        await send(relay, a, "join-room", roomId="R1")
        ws_a.clear()

        await send(relay, b, "join-room", roomId="R1")

        [joined] = ws_a.events("user-joined")
        assert joined["data"]["userId"] == b

    @pytest.mark.asyncio
    async def test_last_leave_deletes_room(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a room disappears with its last member."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, b, "join-room", roomId="R1")
        ws_a.clear()

        await send(relay, b, "leave-room", roomId="R1")

        [left] = ws_a.events("user-left")
        assert left["data"] == {"socketId": b}
        assert relay.rooms.exists("R1")

        await send(relay, a, "leave-room", roomId="R1")

        assert not relay.rooms.exists("R1")
        assert relay.rooms.room_count == 0
        record = relay.registry.get(a)
        assert record is not None
        assert record.room_id is None
        assert record.status == "available"

    @pytest.mark.asyncio
    async def test_rejoin_after_deletion_starts_fresh(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a deleted room comes back empty, with no memory of old members."""
        a, _ = await _registered(relay, open_socket, "alice")
        b, ws_b = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R2")
        await send(relay, a, "leave-room", roomId="R2")
        assert not relay.rooms.exists("R2")

        await send(relay, b, "join-room", roomId="R2")

        [users] = ws_b.events("room-users")
        assert users["data"]["users"] == []
        assert relay.rooms.members("R2") == [b]
        assert relay.stats.total_calls == 2

    @pytest.mark.asyncio
    async def test_stalled_room_does_not_block_other_rooms(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a slow member delays only membership changes of its own room."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        c, ws_c = await _registered(relay, open_socket, "carol")
        await send(relay, a, "join-room", roomId="R1")
        ws_a.gate = asyncio.Event()

        stalled = asyncio.ensure_future(send(relay, b, "join-room", roomId="R1"))
        await asyncio.sleep(0.01)
        assert not stalled.done()

        await asyncio.wait_for(send(relay, c, "join-room", roomId="R2"), timeout=1.0)
        assert ws_c.events("room-users")
        assert relay.rooms.members("R2") == [c]

        ws_a.gate.set()
        await asyncio.wait_for(stalled, timeout=1.0)
        [joined] = ws_a.events("user-joined")
        assert joined["data"]["socketId"] == b

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test leaving twice, or leaving an unknown room, is a no-op."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, b, "join-room", roomId="R1")
        ws_a.clear()

        await send(relay, b, "leave-room", roomId="R1")
        await send(relay, b, "leave-room", roomId="R1")
        await send(relay, b, "leave-room", roomId="nowhere")

        assert len(ws_a.events("user-left")) == 1
        assert relay.rooms.members("R1") == [a]

    @pytest.mark.asyncio
    async def test_join_other_room_leaves_previous(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a connection is in at most one room at a time."""
        a, _ = await _registered(relay, open_socket, "alice")
        c, ws_c = await _registered(relay, open_socket, "carol")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, c, "join-room", roomId="R1")
        ws_c.clear()

        await send(relay, a, "join-room", roomId="R2")

        [left] = ws_c.events("user-left")
        assert left["data"]["socketId"] == a
        assert relay.rooms.members("R1") == [c]
        assert relay.rooms.members("R2") == [a]
        record = relay.registry.get(a)
        assert record is not None
        assert record.room_id == "R2"

    @pytest.mark.asyncio
    async def test_concurrent_joins_create_one_room(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test simultaneous joins never create the room twice."""
        connections = [await open_socket() for _ in range(5)]

        await asyncio.gather(
            *[send(relay, cid, "join-room", roomId="busy") for cid, _ in connections]
        )

        assert sorted(relay.rooms.members("busy")) == sorted(cid for cid, _ in connections)
        assert relay.stats.total_calls == 1
        sizes = sorted(len(ws.events("room-users")[0]["data"]["users"]) for _, ws in connections)
        assert sizes == [0, 1, 2, 3, 4]


class TestDisconnect:
    """Tests for connection cleanup."""

    @pytest.mark.asyncio
    async def test_disconnect_notifies_room(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a dropped connection leaves its room like an explicit leave."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, b, "join-room", roomId="R1")
        ws_a.clear()

        await relay.connections.disconnect(b)
        await relay.on_disconnect(b)

        [left] = ws_a.events("user-left")
        assert left["data"] == {"socketId": b}
        assert b not in relay.registry
        assert relay.rooms.members("R1") == [a]

    @pytest.mark.asyncio
    async def test_disconnect_after_leave_sends_nothing(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test leave followed by disconnect produces a single user-left."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, b, "join-room", roomId="R1")
        ws_a.clear()

        await send(relay, b, "leave-room", roomId="R1")
        await relay.on_disconnect(b)

        assert len(ws_a.events("user-left")) == 1

    @pytest.mark.asyncio
    async def test_disconnect_of_last_member_deletes_room(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test the room goes away when its only member drops."""
        a, _ = await _registered(relay, open_socket, "alice")
        await send(relay, a, "join-room", roomId="R1")

        await relay.on_disconnect(a)

        assert not relay.rooms.exists("R1")
        assert len(relay.registry) == 0


class TestForwarding:
    """Tests for negotiation and notice forwarding."""

    @pytest.fixture
    def room(self, relay: SignalingRelay, open_socket: OpenSocket):
        """Three registered members in room R1."""

        async def _build():
            members = []
            for name in ("alice", "bob", "carol"):
                cid, ws = await _registered(relay, open_socket, name)
                await send(relay, cid, "join-room", roomId="R1")
                members.append((cid, ws))
            for _, ws in members:
                ws.clear()
            return members

        return _build

    @pytest.mark.asyncio
    async def test_directed_offer_reaches_only_target(
        self, relay: SignalingRelay, room
    ) -> None:
        """Test a targeted message goes to that connection only."""
        (a, _), (b, ws_b), (_, ws_c) = await room()
        offer = {"type": "offer", "sdp": "v=0"}

        await send(relay, a, "offer", offer=offer, roomId="R1", targetSocketId=b)

        [event] = ws_b.events("offer")
        assert event["data"] == {"offer": offer, "fromSocketId": a, "roomId": "R1"}
        assert ws_c.events() == []

    @pytest.mark.asyncio
    async def test_untargeted_answer_is_broadcast(self, relay: SignalingRelay, room) -> None:
        """Test a message without target reaches every other member."""
        (a, ws_a), (_, ws_b), (_, ws_c) = await room()

        await send(relay, a, "answer", answer={"sdp": "x"}, roomId="R1")

        assert len(ws_b.events("answer")) == 1
        assert len(ws_c.events("answer")) == 1
        assert ws_a.events() == []

    @pytest.mark.asyncio
    async def test_candidates_arrive_in_order(self, relay: SignalingRelay, room) -> None:
        """Test messages to one recipient keep their send order."""
        (a, _), (b, ws_b), _ = await room()

        for index in range(10):
            await send(
                relay, a, "ice-candidate", candidate={"n": index}, roomId="R1", targetSocketId=b
            )

        received = [event["data"]["candidate"]["n"] for event in ws_b.events("ice-candidate")]
        assert received == list(range(10))

    @pytest.mark.asyncio
    async def test_target_gone_is_dropped(self, relay: SignalingRelay, room) -> None:
        """Test delivery to a vanished connection fails silently."""
        (a, ws_a), (_, ws_b), (_, ws_c) = await room()

        await send(relay, a, "offer", offer={}, roomId="R1", targetSocketId="ghost")

        assert ws_a.events() == []
        assert ws_b.events() == []
        assert ws_c.events() == []

    @pytest.mark.asyncio
    async def test_mute_audio_notice(self, relay: SignalingRelay, room) -> None:
        """Test mute-audio is rebroadcast as user-audio-muted."""
        (a, ws_a), (_, ws_b), _ = await room()

        await send(relay, a, "mute-audio", roomId="R1", muted=True)

        [event] = ws_b.events("user-audio-muted")
        assert event["data"] == {"socketId": a, "muted": True}
        assert ws_a.events() == []

    @pytest.mark.asyncio
    async def test_toggle_video_notice(self, relay: SignalingRelay, room) -> None:
        """Test toggle-video is rebroadcast as user-video-toggled."""
        (a, _), (_, ws_b), _ = await room()

        await send(relay, a, "toggle-video", roomId="R1", enabled=False)

        [event] = ws_b.events("user-video-toggled")
        assert event["data"] == {"socketId": a, "enabled": False}

    @pytest.mark.asyncio
    async def test_hold_notice(self, relay: SignalingRelay, room) -> None:
        """Test hold-call is rebroadcast as call-held."""
        (a, _), _, (_, ws_c) = await room()

        await send(relay, a, "hold-call", roomId="R1", held=True)

        [event] = ws_c.events("call-held")
        assert event["data"] == {"socketId": a, "held": True}

    @pytest.mark.asyncio
    async def test_transfer_notice(self, relay: SignalingRelay, room) -> None:
        """Test transfer-call is rebroadcast as call-transfer-initiated."""
        (a, _), (_, ws_b), _ = await room()

        await send(relay, a, "transfer-call", roomId="R1", targetAgent="dave", callId="c-1")

        [event] = ws_b.events("call-transfer-initiated")
        assert event["data"] == {"targetAgent": "dave", "callId": "c-1", "fromSocketId": a}

    @pytest.mark.asyncio
    async def test_call_state_update_is_stored_and_shared(
        self, relay: SignalingRelay, room
    ) -> None:
        """Test call-state-update updates the registry and reaches the room."""
        (a, _), (_, ws_b), _ = await room()

        await send(
            relay,
            a,
            "call-state-update",
            state="connected",
            callId="c-1",
            roomId="R1",
            interactionId="i-9",
        )

        record = relay.registry.get(a)
        assert record is not None
        assert record.call_state == "connected"
        assert record.interaction_id == "i-9"
        [event] = ws_b.events("call-state-update")
        assert event["data"] == {
            "state": "connected",
            "callId": "c-1",
            "interactionId": "i-9",
            "fromSocketId": a,
        }

    @pytest.mark.asyncio
    async def test_call_state_update_without_room(
        self, relay: SignalingRelay, room
    ) -> None:
        """Test call-state-update with no room only updates the registry."""
        (a, _), (_, ws_b), _ = await room()

        await send(relay, a, "call-state-update", state="idle")

        record = relay.registry.get(a)
        assert record is not None
        assert record.call_state == "idle"
        assert ws_b.events() == []


class TestMalformedMessages:
    """Tests for rejected input."""

    @pytest.mark.asyncio
    async def test_invalid_json(self, relay: SignalingRelay, open_socket: OpenSocket) -> None:
        """Test non-JSON text is answered with an error."""
        a, ws = await open_socket()

        await relay.handle_text(a, "{not json")

        [event] = ws.events("error")
        assert event["data"]["message"].startswith("Invalid JSON")

    @pytest.mark.asyncio
    async def test_missing_type(self, relay: SignalingRelay, open_socket: OpenSocket) -> None:
        """Test an envelope without a type is rejected."""
        a, ws = await open_socket()

        await relay.handle_message(a, {"data": {"roomId": "R1"}})

        [event] = ws.events("error")
        assert event["data"] == {"message": "Malformed message"}

    @pytest.mark.asyncio
    async def test_non_object_message(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a JSON value that is not an object is rejected."""
        a, ws = await open_socket()

        await relay.handle_text(a, "[1, 2, 3]")

        [event] = ws.events("error")
        assert event["data"]["message"] == "Malformed message"

    @pytest.mark.asyncio
    async def test_unknown_type(self, relay: SignalingRelay, open_socket: OpenSocket) -> None:
        """Test an unknown message type is rejected with the type echoed back."""
        a, ws = await open_socket()

        await send(relay, a, "dance", roomId="R1")

        [event] = ws.events("error")
        assert event["data"] == {"message": "Unknown message type", "requestType": "dance"}

    @pytest.mark.asyncio
    async def test_server_event_type_from_client(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a client cannot send server-only events."""
        a, ws = await open_socket()

        await send(relay, a, "user-left", socketId="x")

        [event] = ws.events("error")
        assert event["data"]["message"] == "Unknown message type"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, relay: SignalingRelay, open_socket: OpenSocket) -> None:
        """Test a join-room without a room id is rejected."""
        a, ws = await open_socket()

        await send(relay, a, "join-room", userId="alice")
        await send(relay, a, "join-room", roomId="")

        events = ws.events("error")
        assert [event["data"]["message"] for event in events] == [
            "Invalid join-room payload",
            "Invalid join-room payload",
        ]
        assert relay.rooms.room_count == 0


class TestIntrospection:
    """Tests for health and stats."""

    @pytest.mark.asyncio
    async def test_health_counters(self, relay: SignalingRelay, open_socket: OpenSocket) -> None:
        """Test health reports connections, rooms and totals."""
        a, _ = await _registered(relay, open_socket, "alice")
        b, _ = await _registered(relay, open_socket, "bob")
        await send(relay, a, "join-room", roomId="R1")
        await send(relay, b, "join-room", roomId="R1")
        await relay.on_disconnect(b)

        health = relay.health()

        assert health["connections"] == 1
        assert health["rooms"] == 1
        assert health["stats"] == {
            "totalConnections": 2,
            "totalCalls": 1,
            "currentConnections": 1,
            "currentCalls": 1,
        }
        assert health["uptime"] >= 0

    @pytest.mark.asyncio
    async def test_detailed_stats_lists_rooms(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test detailed stats include each room's members."""
        a, _ = await _registered(relay, open_socket, "alice")
        await send(relay, a, "join-room", roomId="R1")

        stats = relay.detailed_stats()

        assert stats["rooms"] == [{"roomId": "R1", "userCount": 1, "users": [a]}]
        assert stats["totalConnections"] == 1
        assert "startTime" in stats


class TestShutdown:
    """Tests for the server-shutdown notice."""

    @pytest.mark.asyncio
    async def test_every_connection_is_warned_and_closed(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test shutdown reaches registered and unregistered connections alike."""
        a, ws_a = await _registered(relay, open_socket, "alice")
        _, ws_b = await open_socket()
        await send(relay, a, "join-room", roomId="R1")
        ws_a.clear()

        delivered = await relay.shutdown()

        assert delivered == 2
        for ws in (ws_a, ws_b):
            [event] = ws.events("server-shutdown")
            assert event["data"]["message"] == "Server is shutting down"
            assert event["data"]["timestamp"].endswith("Z")
            assert ws.close_code == 1001

    @pytest.mark.asyncio
    async def test_shutdown_notifies_once(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a second shutdown sends nothing."""
        _, ws = await open_socket()
        await relay.shutdown()

        assert await relay.shutdown() == 0
        assert len(ws.events("server-shutdown")) == 1

    @pytest.mark.asyncio
    async def test_unreachable_connection_is_skipped(
        self, relay: SignalingRelay, open_socket: OpenSocket
    ) -> None:
        """Test a failing socket does not stop the others from being warned."""
        await open_socket(should_fail=True)
        _, ws = await open_socket()

        assert await relay.shutdown() == 1
        assert ws.events("server-shutdown")


class TestMembershipSequences:
    """Randomized join/leave/disconnect runs through the relay."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [3, 11, 2024])
    async def test_rooms_and_registry_stay_consistent(
        self, relay: SignalingRelay, open_socket: OpenSocket, seed: int
    ) -> None:
        """Test every step keeps rooms non-empty and in step with the registry."""
        rng = random.Random(seed)
        room_ids = ["R1", "R2"]
        live = [(await open_socket())[0] for _ in range(4)]

        for _ in range(120):
            action = rng.random()
            if action < 0.1 and live:
                connection_id = live.pop(rng.randrange(len(live)))
                await relay.connections.disconnect(connection_id)
                await relay.on_disconnect(connection_id)
            elif action < 0.2 or not live:
                live.append((await open_socket())[0])
            elif action < 0.6:
                await send(relay, rng.choice(live), "join-room", roomId=rng.choice(room_ids))
            else:
                await send(relay, rng.choice(live), "leave-room", roomId=rng.choice(room_ids))

            for room_id in room_ids:
                members = relay.rooms.members(room_id)
                assert relay.rooms.exists(room_id) == bool(members)
                for member in members:
                    record = relay.registry.get(member)
                    assert record is not None
                    assert record.room_id == room_id
            for connection_id in live:
                record = relay.registry.get(connection_id)
                assert record is not None
                if record.room_id is not None:
                    assert relay.rooms.is_member(record.room_id, connection_id)
