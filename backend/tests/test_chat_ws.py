"""End-to-end tests for the relay WebSocket and HTTP endpoints.

Every connection authenticates with a JWT on the handshake. The backend
answers with {type: "connected", connectionId, userId, displayName} and from
then on every event is scoped to rooms the connection has joined.
"""
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import make_token


def ws_url(user_id, display_name=None):
    return f"/ws?token={make_token(user_id, display_name or user_id.title())}"


def auth_headers(user_id):
    return {"Authorization": f"Bearer {make_token(user_id, user_id.title())}"}


def receive_connected(ws):
    """Helper to receive and validate the connected event."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    assert "connectionId" in connected
    return connected


def join(ws, room):
    """Join a room and return the history batch that follows."""
    ws.send_json({"type": "join", "room": room})
    batch = ws.receive_json()
    assert batch["type"] == "history-batch"
    assert batch["room"] == room
    return batch


def send(ws, room, body):
    """Send a message and return the sender's own copy of the broadcast."""
    ws.send_json({"type": "send", "room": room, "body": body})
    echoed = ws.receive_json()
    assert echoed["type"] == "message"
    return echoed


def test_health(api_client):
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "online": 0, "rooms": 0}


def test_health_counts_connections_and_rooms(api_client):
    with api_client.websocket_connect(ws_url("alice")) as alice:
        receive_connected(alice)
        join(alice, "general")

        assert api_client.get("/health").json() == {"status": "ok", "online": 1, "rooms": 1}

    assert api_client.get("/health").json() == {"status": "ok", "online": 0, "rooms": 0}


class TestRoomChat:
    """Messages, presence and membership errors over the socket."""

    def test_two_members_see_same_message(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")

            with api_client.websocket_connect(ws_url("bob")) as bob:
                bob_connected = receive_connected(bob)
                batch = join(bob, "general")
                assert batch["memberCount"] == 2

                joined = alice.receive_json()
                assert joined["type"] == "presence-joined"
                assert joined["connectionId"] == bob_connected["connectionId"]
                assert joined["displayName"] == "Bob"

                to_alice = send(alice, "general", "hi")
                to_bob = bob.receive_json()

                assert to_alice == to_bob
                assert to_alice["sender"] == "alice"
                assert to_alice["displayName"] == "Alice"
                assert to_alice["body"] == "hi"

    def test_send_to_unjoined_room_is_rejected(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")

            with api_client.websocket_connect(ws_url("bob")) as bob:
                receive_connected(bob)
                bob.send_json({"type": "send", "room": "general", "body": "let me in"})

                assert bob.receive_json() == {
                    "type": "error",
                    "code": "NotAMember",
                    "message": "Not a member of room general",
                    "room": "general",
                }

                # Alice never sees the rejected message, only Bob's later join.
                join(bob, "general")
                assert alice.receive_json()["type"] == "presence-joined"

    def test_disconnect_notifies_room_and_clears_presence(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")

            with api_client.websocket_connect(ws_url("bob")) as bob:
                bob_connected = receive_connected(bob)
                join(bob, "general")
                assert alice.receive_json()["type"] == "presence-joined"

            left = alice.receive_json()
            assert left["type"] == "presence-left"
            assert left["room"] == "general"
            assert left["connectionId"] == bob_connected["connectionId"]

            online = api_client.get("/presence", headers=auth_headers("carol")).json()["online"]
            assert [entry["userId"] for entry in online] == ["alice"]

    def test_history_is_replayed_on_join(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")
            for body in ("one", "two", "three"):
                send(alice, "general", body)

            with api_client.websocket_connect(ws_url("bob")) as bob:
                receive_connected(bob)
                batch = join(bob, "general")

        assert [m["body"] for m in batch["messages"]] == ["one", "two", "three"]

    def test_history_survives_everyone_leaving(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")
            send(alice, "general", "anyone there?")

        with api_client.websocket_connect(ws_url("bob")) as bob:
            receive_connected(bob)
            batch = join(bob, "general")

        assert batch["memberCount"] == 1
        assert [m["body"] for m in batch["messages"]] == ["anyone there?"]

    def test_explicit_leave(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")

            alice.send_json({"type": "leave", "room": "general"})
            alice.send_json({"type": "send", "room": "general", "body": "still here?"})
            assert alice.receive_json()["code"] == "NotAMember"

            alice.send_json({"type": "leave", "room": "general"})
            assert alice.receive_json()["code"] == "NotAMember"

    def test_empty_body_is_rejected(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")

            alice.send_json({"type": "send", "room": "general", "body": "   "})

            error = alice.receive_json()
            assert error["code"] == "EmptyBody"
            assert error["room"] == "general"

    def test_private_room_by_peer(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            receive_connected(alice)
            receive_connected(bob)

            alice.send_json({"type": "join", "peer": "bob"})
            assert alice.receive_json()["room"] == "dm_alice_bob"

            bob.send_json({"type": "join", "peer": "alice"})
            assert bob.receive_json()["room"] == "dm_alice_bob"
            assert alice.receive_json()["type"] == "presence-joined"


class TestSignaling:
    """Call signaling between two connections."""

    def test_offer_and_answer(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            alice_connected = receive_connected(alice)
            bob_connected = receive_connected(bob)
            payload = {"sdp": "v=0", "type": "offer"}

            alice.send_json({
                "type": "signal-offer",
                "to": bob_connected["connectionId"],
                "payload": payload,
            })

            incoming = bob.receive_json()
            assert incoming == {
                "type": "signal-incoming",
                "kind": "offer",
                "from": alice_connected["connectionId"],
                "fromUserId": "alice",
                "fromName": "Alice",
                "payload": payload,
            }

            bob.send_json({"type": "signal-answer", "to": incoming["from"], "payload": {"sdp": "ok"}})
            answer = alice.receive_json()
            assert answer["kind"] == "answer"
            assert answer["from"] == bob_connected["connectionId"]

    def test_offer_to_unknown_target_is_silent(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)

            alice.send_json({
                "type": "signal-offer",
                "to": "no-such-connection",
                "payload": {"sdp": "v=0"},
            })

            # The next thing Alice hears is the reply to her join, not an error.
            join(alice, "general")


class TestHandshake:
    """Authentication on connect and malformed frames."""

    def test_missing_token_is_rejected(self, api_client):
        with api_client.websocket_connect("/ws") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "AuthError"
            assert "missing token" in error["message"]
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1008

        assert api_client.get("/presence", headers=auth_headers("carol")).json()["count"] == 0

    def test_invalid_token_is_rejected(self, api_client):
        with api_client.websocket_connect("/ws?token=not-a-jwt") as ws:
            error = ws.receive_json()
            assert error["code"] == "AuthError"
            assert "invalid token" in error["message"]
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_expired_token_is_rejected(self, api_client):
        token = make_token("alice", expires_minutes=-1)
        with api_client.websocket_connect(f"/ws?token={token}") as ws:
            assert "expired token" in ws.receive_json()["message"]
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

    def test_bearer_header_is_accepted(self, api_client):
        token = make_token("alice", "Alice")
        headers = {"Authorization": f"Bearer {token}"}
        with api_client.websocket_connect("/ws", headers=headers) as ws:
            connected = receive_connected(ws)
            assert connected["userId"] == "alice"
            assert connected["displayName"] == "Alice"

    def test_malformed_events_keep_connection_open(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)

            alice.send_text("{not json")
            assert alice.receive_json()["code"] == "MalformedEvent"

            alice.send_json(["join", "general"])
            assert alice.receive_json()["code"] == "MalformedEvent"

            alice.send_json({"type": "dance", "room": "general"})
            assert alice.receive_json()["code"] == "MalformedEvent"

            alice.send_json({"type": "join", "room": "general", "peer": "bob"})
            assert alice.receive_json()["code"] == "MalformedEvent"

            alice.send_json({"type": "signal-offer", "to": "someone"})
            assert alice.receive_json()["code"] == "MalformedEvent"

            join(alice, "general")


class TestHttpViews:
    """Read-only HTTP endpoints."""

    def test_presence_filter_by_user(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice, \
             api_client.websocket_connect(ws_url("bob")) as bob:
            alice_connected = receive_connected(alice)
            receive_connected(bob)

            everyone = api_client.get("/presence", headers=auth_headers("carol")).json()
            assert everyone["count"] == 2

            only_alice = api_client.get("/presence", params={"userId": "alice"}, headers=auth_headers("carol")).json()
            assert only_alice["online"] == [{
                "connectionId": alice_connected["connectionId"],
                "userId": "alice",
                "displayName": "Alice",
            }]

    def test_private_key_endpoint(self, api_client):
        first = api_client.get("/rooms/private-key", params={"a": "bob", "b": "alice"}).json()
        second = api_client.get("/rooms/private-key", params={"a": "alice", "b": "bob"}).json()

        assert first == second == {"room": "dm_alice_bob"}

    def test_private_key_endpoint_rejects_empty_id(self, api_client):
        response = api_client.get("/rooms/private-key", params={"a": "", "b": "bob"})
        assert response.status_code == 400

    def test_history_pagination(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")
            for i in range(5):
                send(alice, "general", f"m{i}")

        page = api_client.get("/rooms/general/history", params={"limit": 2}, headers=auth_headers("bob")).json()
        assert [m["body"] for m in page["messages"]] == ["m3", "m4"]
        assert page["hasMore"] is True

        older = api_client.get(
            "/rooms/general/history",
            params={"limit": 10, "before": page["messages"][0]["time"]},
            headers=auth_headers("bob"),
        ).json()
        assert [m["body"] for m in older["messages"]] == ["m0", "m1", "m2"]
        assert older["hasMore"] is False

    def test_history_limit_is_capped(self, api_client, hub):
        hub.config.relay.max_history_page = 2
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            join(alice, "general")
            for i in range(4):
                send(alice, "general", f"m{i}")

        page = api_client.get("/rooms/general/history", params={"limit": 50}, headers=auth_headers("bob")).json()
        assert len(page["messages"]) == 2

    def test_history_of_unknown_room_is_empty(self, api_client):
        page = api_client.get("/rooms/nowhere/history", headers=auth_headers("bob")).json()
        assert page == {"messages": [], "hasMore": False}

    @pytest.mark.parametrize("path", ["/presence", "/rooms/general/history"])
    def test_views_require_token(self, api_client, path):
        assert api_client.get(path).status_code == 401
        assert api_client.get(path, headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401

    def test_token_accepted_as_query_param(self, api_client):
        token = make_token("carol")
        response = api_client.get("/presence", params={"token": token})
        assert response.status_code == 200

    def test_private_history_only_for_participants(self, api_client):
        with api_client.websocket_connect(ws_url("alice")) as alice:
            receive_connected(alice)
            alice.send_json({"type": "join", "peer": "bob"})
            assert alice.receive_json()["room"] == "dm_alice_bob"
            send(alice, "dm_alice_bob", "secret")

        anonymous = api_client.get("/rooms/dm_alice_bob/history")
        assert anonymous.status_code == 401

        outsider = api_client.get("/rooms/dm_alice_bob/history", headers=auth_headers("carol"))
        assert outsider.status_code == 403

        for user_id in ("alice", "bob"):
            page = api_client.get("/rooms/dm_alice_bob/history", headers=auth_headers(user_id)).json()
            assert [m["body"] for m in page["messages"]] == ["secret"]


class TestPrivateRooms:
    """Private rooms are closed to everyone but their two participants."""

    def test_outsider_cannot_join_by_key(self, api_client):
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_connected(carol)

            carol.send_json({"type": "join", "room": "dm_alice_bob"})

            assert carol.receive_json() == {
                "type": "error",
                "code": "Forbidden",
                "message": "Room dm_alice_bob is private",
                "room": "dm_alice_bob",
            }

    def test_participant_can_join_by_key(self, api_client):
        with api_client.websocket_connect(ws_url("bob")) as bob:
            receive_connected(bob)
            join(bob, "dm_alice_bob")

    def test_non_canonical_dm_name_is_a_group_room(self, api_client):
        with api_client.websocket_connect(ws_url("carol")) as carol:
            receive_connected(carol)
            join(carol, "dm_bob_alice")
