"""
End-to-end tests of the real-time channel through the ASGI app.
"""
import pytest
from starlette.websockets import WebSocketDisconnect


def authenticate(ws, user_id: int, token: str = None):
    payload = {"userId": user_id}
    if token is not None:
        payload["token"] = token
    ws.send_json({"type": "auth", "payload": payload})


def sync(ws):
    """Round-trip a malformed frame; returns the frames that arrived before the reply"""
    ws.send_text("sync")
    frames = []
    while True:
        frame = ws.receive_json()
        if frame == {"type": "error", "payload": {"message": "Frame is not valid JSON"}}:
            return frames
        frames.append(frame)


def status_event(user_id: int, online: bool):
    return {"type": "userStatus", "payload": {"userId": user_id, "online": online}}


class TestRealtimeChannel:
    """Test presence, relay and replacement over /ws."""

    @pytest.fixture
    def users(self, seed_user):
        return seed_user("alice@example.com"), seed_user("bob@example.com")

    @pytest.fixture
    def hub(self, test_client):
        return test_client.app.state.hub

    def test_presence_message_and_typing(self, test_client, users, hub, run_async):
        """Test the main real-time flow between two users."""
        alice, bob = users

        with test_client.websocket_connect("/ws") as bob_ws:
            authenticate(bob_ws, bob.id)
            assert sync(bob_ws) == []

            with test_client.websocket_connect("/ws") as alice_ws:
                authenticate(alice_ws, alice.id)
                assert bob_ws.receive_json() == status_event(alice.id, True)
                assert sync(alice_ws) == []
                assert run_async(hub.store.get_user, alice.id).online is True

                response = test_client.post(
                    "/api/messages",
                    json={"senderId": alice.id, "receiverId": bob.id, "content": "hi"},
                )
                message_id = response.json()["id"]

                delivered = bob_ws.receive_json()
                assert delivered["type"] == "newMessage"
                assert delivered["payload"]["id"] == message_id
                assert delivered["payload"]["content"] == "hi"
                echo = alice_ws.receive_json()
                assert echo["payload"]["id"] == message_id

                alice_ws.send_json({"type": "typing", "payload": {"receiverId": bob.id}})
                assert bob_ws.receive_json() == {
                    "type": "typing",
                    "payload": {"userId": alice.id},
                }

            assert bob_ws.receive_json() == status_event(alice.id, False)

        assert run_async(hub.store.get_user, alice.id).online is False

    def test_second_session_replaces_first(self, test_client, users, hub):
        """Test that a newer connection closes the older one with 1000."""
        alice, bob = users

        with test_client.websocket_connect("/ws") as bob_ws:
            authenticate(bob_ws, bob.id)
            sync(bob_ws)

            with test_client.websocket_connect("/ws") as first:
                authenticate(first, alice.id)
                assert bob_ws.receive_json() == status_event(alice.id, True)

                with test_client.websocket_connect("/ws") as second:
                    authenticate(second, alice.id)

                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        first.receive_json()
                    assert exc_info.value.code == 1000

                    sync(second)
                    # The replacement is not announced as a presence change
                    assert sync(bob_ws) == []

                    response = test_client.post(
                        "/api/messages",
                        json={"senderId": bob.id, "receiverId": alice.id, "content": "yo"},
                    )
                    assert second.receive_json()["payload"]["id"] == response.json()["id"]

    def test_message_to_self_is_neither_stored_nor_relayed(
        self, test_client, users, hub, run_async
    ):
        """Test that a self-addressed message leaves no row and sends no frame."""
        alice, bob = users

        with test_client.websocket_connect("/ws") as bob_ws:
            authenticate(bob_ws, bob.id)
            sync(bob_ws)

            with test_client.websocket_connect("/ws") as alice_ws:
                authenticate(alice_ws, alice.id)
                assert bob_ws.receive_json() == status_event(alice.id, True)
                sync(alice_ws)

                response = test_client.post(
                    "/api/messages",
                    json={"senderId": alice.id, "receiverId": alice.id, "content": "me"},
                )

                assert response.status_code == 400
                assert sync(alice_ws) == []
                assert sync(bob_ws) == []
                assert run_async(hub.store.list_messages_between, alice.id, alice.id) == []

    def test_typing_to_offline_user_dropped(self, test_client, users):
        alice, bob = users

        with test_client.websocket_connect("/ws") as alice_ws:
            authenticate(alice_ws, alice.id)
            alice_ws.send_json({"type": "typing", "payload": {"receiverId": bob.id}})

            assert sync(alice_ws) == []

    def test_errors_keep_socket_open(self, test_client, users):
        """Test that protocol errors are reported without closing the socket."""
        alice, _ = users

        with test_client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "typing", "payload": {"receiverId": alice.id}})
            assert ws.receive_json()["payload"]["message"] == (
                "Authenticate before sending typing events"
            )

            ws.send_json({"type": "auth", "payload": {"userId": 999}})
            assert ws.receive_json()["payload"]["message"] == "User not found: 999"

            ws.send_json({"type": "nope"})
            assert ws.receive_json()["payload"]["message"].startswith("Invalid frame")

            authenticate(ws, alice.id)
            assert sync(ws) == []

    def test_socket_token_checked(self, test_client, users, hub):
        alice, bob = users
        token = hub.auth_service.jwt_manager.create_access_token(alice)

        with test_client.websocket_connect("/ws") as ws:
            authenticate(ws, bob.id, token=token)
            assert ws.receive_json()["payload"]["message"] == (
                "Authentication failed: Token does not belong to this user"
            )

            authenticate(ws, alice.id, token=token)
            sync(ws)
            assert hub.registry.lookup(alice.id) is not None


class TestHeartbeat:
    """Test the liveness heartbeat over /ws."""

    @pytest.fixture
    def alice(self, seed_user):
        return seed_user("alice@example.com")

    def test_acknowledged_probe_keeps_connection(self, test_client, alice, run_async):
        liveness = test_client.app.state.hub.liveness

        with test_client.websocket_connect("/ws") as ws:
            authenticate(ws, alice.id)
            sync(ws)

            run_async(liveness.sweep)
            assert ws.receive_json() == {"type": "ping"}
            ws.send_json({"type": "pong"})
            sync(ws)

            assert run_async(liveness.sweep) == []
            assert ws.receive_json() == {"type": "ping"}

    def test_unanswered_probe_evicts(self, test_client, alice, run_async):
        """Test that a silent client is closed with 4000 and marked offline."""
        hub = test_client.app.state.hub

        with test_client.websocket_connect("/ws") as ws:
            authenticate(ws, alice.id)
            sync(ws)

            run_async(hub.liveness.sweep)
            evicted = run_async(hub.liveness.sweep)

            assert len(evicted) == 1
            assert ws.receive_json() == {"type": "ping"}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 4000

        assert hub.registry.lookup(alice.id) is None
        assert run_async(hub.store.get_user, alice.id).online is False
