import pytest

from auth import issue_token
from realtime import ConnectionRegistry


@pytest.fixture
def chat(services, make_user):
    alice = make_user("Alice Smith", "alice")
    bob = make_user("Bob Jones", "bob")
    conversation = services.conversations.find_or_create_conversation(alice, bob)
    return alice, bob, conversation["id"]


def test_registry_bind_returns_superseded(recording):
    registry = ConnectionRegistry()
    first, second = recording("a"), recording("b")

    assert registry.bind("u1", first) is None
    assert registry.bind("u1", first) is None
    assert registry.bind("u1", second) is first
    assert registry.lookup("u1") is second

    registry.unbind("u1", first)
    assert registry.lookup("u1") is second
    registry.unbind("u1", second)
    assert registry.lookup("u1") is None
    assert len(registry) == 0


def test_authenticate_rejects_bad_tokens(services, recording, chat):
    alice, _, _ = chat
    connection = recording("c")
    forged = issue_token(alice, secret="not-the-server-secret")

    assert not services.hub.authenticate(connection, forged)
    assert not services.hub.authenticate(connection, None)
    assert not connection.authenticated
    assert len(connection.named("error")) == 2


def test_join_requires_authentication_and_participation(services, recording, connect, make_user, chat):
    _, _, conversation_id = chat
    anonymous = recording("anon")
    assert not services.hub.join(anonymous, conversation_id)

    outsider = connect(make_user("Carol King", "carol"))
    assert not services.hub.join(outsider, conversation_id)
    assert services.hub.rooms.get(conversation_id) is None


def test_send_message_fans_out_to_room(services, connect, chat):
    alice, bob, conversation_id = chat
    alice_conn, bob_conn = connect(alice), connect(bob)
    assert services.hub.join(alice_conn, conversation_id)
    assert services.hub.join(bob_conn, conversation_id)

    message = services.conversations.send_message(conversation_id, alice, "hello")

    for connection in (alice_conn, bob_conn):
        assert [m["id"] for m in connection.named("newMessage")] == [message["id"]]
        updated = connection.named("conversationUpdated")
        assert len(updated) == 1
        assert updated[0]["last_message"]["content"] == "hello"
        assert sorted(p["id"] for p in updated[0]["participants"]) == sorted([alice, bob])


def test_delete_message_fans_out(services, connect, chat):
    alice, bob, conversation_id = chat
    bob_conn = connect(bob)
    services.hub.join(bob_conn, conversation_id)
    message = services.conversations.send_message(conversation_id, alice, "oops")

    services.conversations.delete_message(message["id"], alice)
    assert bob_conn.named("messageDeleted") == [{"messageId": message["id"]}]


def test_typing_excludes_the_typer(services, connect, chat):
    alice, bob, conversation_id = chat
    alice_conn, bob_conn = connect(alice), connect(bob)
    services.hub.join(alice_conn, conversation_id)
    services.hub.join(bob_conn, conversation_id)

    services.hub.handle(alice_conn, "typing", {"conversationId": conversation_id, "isTyping": True})

    assert bob_conn.named("userTyping") == [{"userId": alice, "isTyping": True}]
    assert alice_conn.named("userTyping") == []


def test_typing_outside_room_is_ignored(services, connect, chat):
    alice, bob, conversation_id = chat
    alice_conn, bob_conn = connect(alice), connect(bob)
    services.hub.join(bob_conn, conversation_id)

    services.hub.typing(alice_conn, conversation_id, True)
    assert bob_conn.named("userTyping") == []


def test_leave_stops_delivery(services, connect, chat):
    alice, bob, conversation_id = chat
    bob_conn = connect(bob)
    services.hub.handle(bob_conn, "joinConversation", conversation_id)
    services.hub.handle(bob_conn, "leaveConversation", {"conversationId": conversation_id})

    services.conversations.send_message(conversation_id, alice, "anyone?")
    assert bob_conn.named("newMessage") == []
    assert conversation_id not in services.hub.rooms


def test_reauthentication_closes_superseded_connection(services, connect, chat):
    alice, bob, conversation_id = chat
    old = connect(bob, "old")
    services.hub.join(old, conversation_id)

    new = connect(bob, "new")
    assert old.closed
    assert services.hub.registry.lookup(bob) is new

    services.conversations.send_message(conversation_id, alice, "after reconnect")
    assert old.named("newMessage") == []


def test_disconnect_cleans_up(services, connect, chat):
    _, bob, conversation_id = chat
    bob_conn = connect(bob)
    services.hub.join(bob_conn, conversation_id)

    services.hub.disconnect(bob_conn)
    assert services.hub.registry.lookup(bob) is None
    assert conversation_id not in services.hub.rooms


def test_failing_connection_does_not_block_others(services, connect, recording, chat):
    alice, bob, conversation_id = chat

    class Exploding(recording):
        def deliver(self, event, payload):
            if event == "authenticated" or event == "joinedConversation":
                return super().deliver(event, payload)
            raise ConnectionError("gone")

    broken = Exploding("broken")
    services.hub.authenticate(broken, issue_token(alice))
    services.hub.join(broken, conversation_id)
    bob_conn = connect(bob)
    services.hub.join(bob_conn, conversation_id)

    services.conversations.send_message(conversation_id, alice, "still delivered")
    assert len(bob_conn.named("newMessage")) == 1


def test_unknown_event_reports_error(services, recording):
    connection = recording("c")
    services.hub.handle(connection, "shout", {})
    assert connection.named("error")


def test_websocket_endpoint_delivers_new_messages(client, services, bearer, chat):
    alice, bob, conversation_id = chat
    with client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "authenticate", "data": {"token": issue_token(bob)}})
            assert ws.receive_json() == {"event": "authenticated", "data": {"userId": bob}}

            ws.send_json({"event": "joinConversation", "data": conversation_id})
            assert ws.receive_json() == {"event": "joinedConversation", "data": {"conversationId": conversation_id}}

            response = client.post(
                f"/api/messages/{conversation_id}/messages",
                json={"content": "live"},
                headers=bearer(alice),
            )
            assert response.status_code == 201

            event = ws.receive_json()
            assert event["event"] == "newMessage"
            assert event["data"]["content"] == "live"
            assert ws.receive_json()["event"] == "conversationUpdated"
