"""
Tests for the /ws live connection endpoint.

Tests cover:
- Handshake authentication (missing, malformed, expired tokens)
- send_message: ack, push to a live recipient, offline recipient, validation
- Persist-before-deliver ordering against the history endpoint
- Typing relay and best-effort drop for offline recipients
- Reconnects: a stale disconnect keeps the newer connection registered
- Storage failures and per-connection rate limiting
"""

from contextlib import ExitStack

import pytest
from fastapi import WebSocketDisconnect

from messaging import storage
from messaging.models import Conversation, Message
from messaging.storage import SessionLocal, get_or_create_conversation


@pytest.fixture
def live(client, headers):
    """Factory opening authenticated connections; all are closed at teardown."""
    with ExitStack() as stack:
        def open_connection(user_id: str, email: str = None):
            ws = stack.enter_context(
                client.websocket_connect("/ws", headers=headers(user_id, email=email))
            )
            assert ws.receive_json() == {"event": "connected", "data": {"userId": user_id}}
            return ws

        yield open_connection


def send(ws, event: str, data) -> None:
    ws.send_json({"event": event, "data": data})


def count_rows(model) -> int:
    with SessionLocal() as db:
        return db.query(model).count()


class TestHandshake:
    """Test authentication at connect time."""

    def test_missing_cookie_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass

        assert exc_info.value.code == 1008
        assert exc_info.value.reason == "Authentication cookie not provided"

    def test_cookie_without_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws", headers={"cookie": "theme=dark"}):
                pass

        assert exc_info.value.reason == "Authentication token not found in cookies"

    def test_invalid_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws", headers={"cookie": "token=not-a-jwt"}):
                pass

        assert exc_info.value.code == 1008
        assert exc_info.value.reason == "Invalid authentication token"

    def test_expired_token_rejected(self, client, headers):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws", headers=headers("alice", expires_in=-60)):
                pass

        assert exc_info.value.reason == "Authentication token has expired"
        assert client.app.state.registry.lookup("alice") is None

    def test_authenticated_connection_is_registered(self, client, live):
        live("alice")

        assert client.app.state.registry.lookup("alice") is not None


class TestSendMessage:
    """Test the send_message event."""

    def test_new_conversation_with_live_recipient(self, client, live, users):
        alice = live("alice")
        bob = live("bob")

        send(alice, "send_message", {"recipientId": "bob", "content": "hi"})

        ack = alice.receive_json()
        assert ack["event"] == "message_sent"
        assert ack["data"]["content"] == "hi"
        assert ack["data"]["isOwn"] is True

        push = bob.receive_json()
        assert push["event"] == "receive_message"
        assert push["data"] == {
            "id": ack["data"]["id"],
            "conversationId": ack["data"]["conversationId"],
            "senderId": "alice",
            "senderName": "Alice",
            "content": "hi",
            "timestamp": ack["data"]["timestamp"],
            "isOwn": False,
            "isRead": False,
        }

        with SessionLocal() as db:
            conversation = db.query(Conversation).one()
            message = db.query(Message).one()
            assert conversation.participant_ids == frozenset({"alice", "bob"})
            assert conversation.last_message_text == "hi"
            assert message.conversation_id == conversation.id
            assert message.sender_id == "alice"
            assert message.is_read is False

    def test_offline_recipient_reads_from_history(self, client, live, headers):
        alice = live("alice")

        send(alice, "send_message", {"recipientId": "bob", "content": "hi"})
        ack = alice.receive_json()

        assert ack["event"] == "message_sent"
        assert client.app.state.registry.lookup("bob") is None

        response = client.get(f"/messages/{ack['data']['conversationId']}", headers=headers("bob"))
        assert response.status_code == 200
        history = response.json()["data"]
        assert len(history) == 1
        assert history[0]["id"] == ack["data"]["id"]
        assert history[0]["content"] == "hi"
        assert history[0]["isRead"] is False
        assert history[0]["isOwn"] is False

    def test_pushed_message_already_in_history(self, client, live, headers):
        alice = live("alice")
        bob = live("bob")

        send(alice, "send_message", {"recipientId": "bob", "content": "stored first"})
        push = bob.receive_json()

        response = client.get(f"/messages/{push['data']['conversationId']}", headers=headers("bob"))
        assert [m["id"] for m in response.json()["data"]] == [push["data"]["id"]]

    def test_sender_name_falls_back_to_email(self, live):
        dave = live("dave", email="dave.smith@example.com")
        bob = live("bob")

        send(dave, "send_message", {"recipientId": "bob", "content": "hello"})

        assert bob.receive_json()["data"]["senderName"] == "dave.smith"

    def test_existing_conversation_id(self, live):
        with SessionLocal() as db:
            conversation_id = get_or_create_conversation(db, "alice", "bob").id
        alice = live("alice")

        send(alice, "send_message", {
            "recipientId": "bob", "content": "again", "conversationId": conversation_id,
        })
        ack = alice.receive_json()

        assert ack["data"]["conversationId"] == conversation_id
        assert count_rows(Conversation) == 1

    def test_content_is_trimmed(self, live):
        alice = live("alice")

        send(alice, "send_message", {"recipientId": "bob", "content": "  padded  "})

        assert alice.receive_json()["data"]["content"] == "padded"


class TestSendMessageRejected:
    """Test send_message validation and failures."""

    @pytest.mark.parametrize("data, expected", [
        ({"recipientId": "alice", "content": "hi"}, "Cannot send a message to yourself"),
        ({"content": ""}, "Missing required fields"),
        ({"recipientId": "bob"}, "Missing required fields"),
        ({"recipientId": "bob", "content": "   "}, "Message cannot be empty"),
        ({"recipientId": "bob", "content": "x" * 1001}, "Message cannot exceed 1000 characters"),
        ({"recipientId": "bob", "content": "hi", "conversationId": "nope"}, "Conversation not found"),
    ])
    def test_rejected_without_persistence(self, live, data, expected):
        alice = live("alice")

        send(alice, "send_message", data)

        assert alice.receive_json() == {"event": "error", "data": expected}
        assert count_rows(Conversation) == 0
        assert count_rows(Message) == 0

    def test_conversation_of_another_pair(self, live):
        with SessionLocal() as db:
            conversation_id = get_or_create_conversation(db, "bob", "carol").id
        alice = live("alice")

        send(alice, "send_message", {
            "recipientId": "bob", "content": "hi", "conversationId": conversation_id,
        })

        assert alice.receive_json() == {
            "event": "error",
            "data": "You are not a participant in this conversation",
        }
        assert count_rows(Message) == 0

    def test_storage_failure_reports_error_without_delivery(self, live, monkeypatch):
        def failing_append(*args, **kwargs):
            raise storage.StorageError("Failed to store message")

        monkeypatch.setattr(storage, "append_message", failing_append)
        alice = live("alice")
        bob = live("bob")

        send(alice, "send_message", {"recipientId": "bob", "content": "hi"})
        assert alice.receive_json() == {"event": "error", "data": "Failed to send message"}

        # Bob's next frame is the typing relay, not a stray receive_message
        send(alice, "typing", {"recipientId": "bob"})
        assert bob.receive_json()["event"] == "user_typing"
        assert count_rows(Message) == 0

    def test_error_only_reaches_the_sender(self, live):
        alice = live("alice")
        bob = live("bob")

        send(alice, "send_message", {"recipientId": "alice", "content": "hi"})
        assert alice.receive_json()["event"] == "error"

        send(alice, "typing", {"recipientId": "bob"})
        assert bob.receive_json()["event"] == "user_typing"

    def test_rate_limited(self, client, live):
        client.app.state.hub.message_interval = 60
        alice = live("alice")

        send(alice, "send_message", {"recipientId": "bob", "content": "one"})
        assert alice.receive_json()["event"] == "message_sent"

        send(alice, "send_message", {"recipientId": "bob", "content": "two"})
        reply = alice.receive_json()

        assert reply["event"] == "error"
        assert "rate limit" in reply["data"]
        assert count_rows(Message) == 1

    def test_malformed_frames(self, live):
        alice = live("alice")

        alice.send_text("not json")
        assert alice.receive_json() == {"event": "error", "data": "Malformed event frame"}

        send(alice, "delete_everything", {})
        assert alice.receive_json() == {"event": "error", "data": "Unknown event: delete_everything"}

        alice.send_bytes(b'{"event": "typing", "data": {"recipientId": "bob"}}')
        assert alice.receive_json() == {"event": "error", "data": "Malformed event frame"}

        # The connection survives and keeps serving events
        send(alice, "send_message", {"recipientId": "bob", "content": "still here"})
        assert alice.receive_json()["event"] == "message_sent"


class TestTyping:
    """Test typing indicator relay."""

    def test_relayed_to_live_recipient(self, live):
        alice = live("alice")
        bob = live("bob")

        send(alice, "typing", {"recipientId": "bob", "conversationId": "c1"})
        assert bob.receive_json() == {
            "event": "user_typing",
            "data": {"conversationId": "c1", "userId": "alice"},
        }

        send(alice, "stop_typing", {"recipientId": "bob"})
        assert bob.receive_json() == {
            "event": "user_stop_typing",
            "data": {"conversationId": None, "userId": "alice"},
        }

    def test_offline_recipient_dropped_silently(self, live):
        alice = live("alice")

        send(alice, "typing", {"recipientId": "carol", "conversationId": "c1"})
        send(alice, "stop_typing", {"recipientId": "carol"})
        # The first frame back answers this invalid event, so the two above produced nothing
        send(alice, "typing", {})

        assert alice.receive_json() == {"event": "error", "data": "Missing required fields"}
        assert count_rows(Conversation) == 0
        assert count_rows(Message) == 0


    def test_typing_to_self_is_dropped(self, live):
        alice = live("alice")

        send(alice, "typing", {"recipientId": "alice"})
        send(alice, "stop_typing", {"recipientId": "alice"})
        # Nothing came back for the two events above
        send(alice, "typing", {})

        assert alice.receive_json() == {"event": "error", "data": "Missing required fields"}


class TestReconnect:
    """Test registry ownership across reconnects."""

    def test_stale_disconnect_keeps_newer_connection(self, client, live):
        first = live("alice")
        second = live("alice")
        first.close()
        bob = live("bob")

        send(bob, "send_message", {"recipientId": "alice", "content": "still there?"})
        assert bob.receive_json()["event"] == "message_sent"

        push = second.receive_json()
        assert push["event"] == "receive_message"
        assert push["data"]["content"] == "still there?"
        assert client.app.state.registry.lookup("alice") is not None
