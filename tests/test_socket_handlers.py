import time
from datetime import timedelta

import jwt
import pytest


def _names(received):
    return [pkt["name"] for pkt in received]


def _only(received, name):
    return [pkt for pkt in received if pkt["name"] == name]


def _sid(client, namespace="/"):
    return client.socketio.server.manager.sid_from_eio_sid(client.eio_sid, namespace)


@pytest.fixture
def connect(app, socketio):
    clients = []

    def _connect(**kwargs):
        client = socketio.test_client(app, **kwargs)
        clients.append(client)
        return client

    yield _connect
    for client in clients:
        if client.is_connected():
            client.disconnect()


def _online(client, user_id):
    ack = client.emit("setup", {"_id": user_id}, callback=True)
    assert ack == {"success": True, "result": user_id}
    client.get_received()


def test_setup_and_disconnect_are_broadcast(connect):
    alice = connect()
    observer = connect()
    observer.get_received()

    ack = alice.emit("setup", {"_id": "u1", "name": "Alice"}, callback=True)
    assert ack == {"success": True, "result": "u1"}

    received = alice.get_received()
    assert _names(received) == ["connected", "active", "globalActive"]
    assert received[1]["args"] == [["u1"]]

    seen = observer.get_received()
    assert [(p["name"], p["args"]) for p in seen] == [("globalActive", [["u1"]])]

    alice.disconnect()
    seen = observer.get_received()
    assert [(p["name"], p["args"]) for p in seen] == [("inactive", ["u1"])]


def test_setup_without_id_is_rejected(connect):
    client = connect()
    ack = client.emit("setup", {"name": "nobody"}, callback=True)
    assert ack["success"] is False
    assert _only(client.get_received(), "connected") == []


def test_new_message_is_relayed_to_members(connect):
    a, b, c = connect(), connect(), connect()
    _online(a, "u1")
    _online(b, "u2")
    _online(c, "u3")
    a.get_received()
    b.get_received()

    message = {"content": "hello", "sender": {"_id": "u1"}, "chat": {"_id": "chat1", "users": ["u1", "u2"]}}
    ack = a.emit("newMessage", message, callback=True)
    assert ack == {"success": True, "result": 2}

    assert [p["args"] for p in _only(b.get_received(), "messageReceived")] == [[message]]
    assert _only(a.get_received(), "messageReceived") != []
    assert _only(c.get_received(), "messageReceived") == []


def test_new_message_without_users_gets_error_ack(connect):
    a = connect()
    _online(a, "u1")
    ack = a.emit("newMessage", {"content": "x", "chat": {"_id": "chat1"}}, callback=True)
    assert ack == {"success": False, "error": "chat.users not defined"}


def test_typing_carries_room_and_sender(connect):
    a, b = connect(), connect()
    _online(a, "u1")
    _online(b, "u2")
    b.get_received()

    room = {"_id": "chat1", "users": [{"_id": "u1"}, {"_id": "u2"}]}
    a.emit("typing", room, {"_id": "u1"})
    a.emit("stopTyping", room)

    seen = b.get_received()
    assert [(p["name"], p["args"]) for p in seen] == [
        ("typing", ["chat1", "u1"]),
        ("stopTyping", ["chat1"]),
    ]


def test_call_room_signaling(connect):
    first, second = connect(), connect()

    ack = first.emit("joinRoom", "R", {"name": "First"}, callback=True)
    assert ack == {"success": True, "users": []}
    first.get_received()

    ack = second.emit("joinRoom", "R", {"name": "Second"}, callback=True)
    assert ack == {"success": True, "users": [{"id": _sid(first), "userInfo": {"name": "First"}}]}
    assert _only(first.get_received(), "allUsers") == []

    ack = second.emit(
        "sendingSignal",
        {"userToSignal": _sid(first), "signal": {"sdp": "offer"}, "userInfo": {"name": "Second"}},
        callback=True,
    )
    assert ack == {"success": True, "delivered": True}
    joined = _only(first.get_received(), "userJoined")
    assert joined[0]["args"] == [{"signal": {"sdp": "offer"}, "callerID": _sid(second), "userInfo": {"name": "Second"}}]

    ack = first.emit("returningSignal", {"callerID": _sid(second), "signal": {"sdp": "answer"}}, callback=True)
    assert ack == {"success": True, "delivered": True}
    returned = _only(second.get_received(), "receivingReturnedSignal")
    assert returned[0]["args"] == [{"signal": {"sdp": "answer"}, "id": _sid(first)}]

    second_sid = _sid(second)
    second.emit("endCall", "R")
    assert [p["args"] for p in _only(first.get_received(), "userLeft")] == [[second_sid]]


def _relay_sids(app):
    return app.config["CHATRELAY_RELAY"].directory.all_sids()


def _service_token(settings, user_id, **claims):
    """Token shaped like the account service's: ``{"id": ...}`` signed with the shared secret."""
    now = int(time.time())
    payload = {"id": user_id, "iat": now, "exp": now + 600}
    payload.update(claims)
    return jwt.encode(payload, settings["jwt_secret"], algorithm="HS256")


def test_invalid_token_is_refused(socketio, app):
    socketio.test_client(app, auth={"token": "not-a-jwt"})
    assert _relay_sids(app) == []


def test_account_service_token_is_accepted(make_app, settings):
    app, socketio = make_app(socket_require_auth=True)
    client = socketio.test_client(app, auth={"token": _service_token(settings, "u1")})

    assert _relay_sids(app) == [_sid(client)]
    ack = client.emit("setup", {"_id": "u1"}, callback=True)
    assert ack == {"success": True, "result": "u1"}
    client.disconnect()


def test_account_service_cookie_is_accepted(make_app, settings):
    app, socketio = make_app(socket_require_auth=True)
    cookie = f"jwt={_service_token(settings, 'u3')}"
    client = socketio.test_client(app, headers={"Cookie": cookie})

    assert _relay_sids(app) == [_sid(client)]
    assert app.config["CHATRELAY_RELAY"].directory.get(_sid(client)).identity == "u3"
    client.disconnect()


def test_logged_out_cookie_connects_anonymously(app, socketio):
    client = socketio.test_client(app, headers={"Cookie": "jwt=loggedout"})

    sid = _sid(client)
    assert _relay_sids(app) == [sid]
    assert app.config["CHATRELAY_RELAY"].directory.get(sid).identity is None

    ack = client.emit("setup", {"_id": "u5"}, callback=True)
    assert ack == {"success": True, "result": "u5"}
    client.disconnect()


def test_logged_out_cookie_is_refused_when_auth_required(make_app):
    app, socketio = make_app(socket_require_auth=True)
    socketio.test_client(app, headers={"Cookie": "jwt=loggedout"})
    assert _relay_sids(app) == []


def test_explicit_bad_token_is_refused_even_with_valid_cookie(app, socketio, settings):
    cookie = f"jwt={_service_token(settings, 'u1')}"
    socketio.test_client(app, auth={"token": "not-a-jwt"}, headers={"Cookie": cookie})
    assert _relay_sids(app) == []


def test_require_auth_refuses_anonymous(make_app, make_token):
    app, socketio = make_app(socket_require_auth=True)

    socketio.test_client(app)
    assert _relay_sids(app) == []

    client = socketio.test_client(app, auth={"token": make_token(app, "u1")})
    assert _relay_sids(app) == [_sid(client)]

    ack = client.emit("setup", {"_id": "u2"}, callback=True)
    assert ack == {"success": False, "error": "Identity mismatch"}

    ack = client.emit("setup", {"_id": "u1"}, callback=True)
    assert ack == {"success": True, "result": "u1"}
    client.disconnect()


def test_token_in_query_string(make_app, make_token):
    app, socketio = make_app(socket_require_auth=True)
    token = make_token(app, "u7")
    client = socketio.test_client(app, query_string=f"?token={token}")
    assert _relay_sids(app) == [_sid(client)]
    client.disconnect()


def test_token_expiring_mid_session_gets_auth_error(make_app, make_token):
    app, socketio = make_app(socket_require_auth=True)
    token = make_token(app, "u1", expires_delta=timedelta(seconds=-30))

    # Accepted at handshake time thanks to the leeway, expired afterwards.
    app.config["JWT_DECODE_LEEWAY"] = 3600
    client = socketio.test_client(app, auth={"token": token})
    sid = _sid(client)
    assert _relay_sids(app) == [sid]
    app.config["JWT_DECODE_LEEWAY"] = 0

    ack = client.emit("setup", {"_id": "u1"}, callback=True)

    assert ack == {"success": False, "error": "jwt_expired"}
    auth_errors = [p for p in client.queue if p["name"] == "auth_error"]
    assert [p["args"] for p in auth_errors] == [[{"reason": "jwt_expired"}]]
    assert not client.is_connected()
    assert _relay_sids(app) == []
    assert app.config["CHATRELAY_RELAY"].active_users() == []


def test_event_rate_limit(make_app):
    app, socketio = make_app(socket_event_rate_limit="2@60")
    client = socketio.test_client(app)

    assert client.emit("joinChat", "chat1", callback=True)["success"] is True
    assert client.emit("joinChat", "chat1", callback=True)["success"] is True
    ack = client.emit("joinChat", "chat1", callback=True)
    assert ack["success"] is False
    assert ack["error"] == "Rate limited"
    assert ack["retry_after"] > 0
    client.disconnect()


def test_presence_endpoint_reflects_socket_sessions(app, connect, make_token):
    a = connect()
    _online(a, "u1")

    http = app.test_client()
    resp = http.get("/api/v1/presence", headers={"Authorization": f"Bearer {make_token(app, 'u9')}"})
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "success", "results": 1, "data": ["u1"]}
