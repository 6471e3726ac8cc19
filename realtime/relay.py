"""ChatRelay: presence, room membership and event fan-out.

The relay never talks to Socket.IO directly. It sends through a transport
with a single method::

    transport.send(event, *args, to=None, skip_sid=None)

``to=None`` means every connection. ``SocketIOTransport`` adapts a
Flask-SocketIO server; tests use a recording transport.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Optional

from realtime.state import CallRoomCoordinator, PresenceRegistry, RoomDirectory, log_dropped


class SocketIOTransport:
    """Route relay sends through a ``flask_socketio.SocketIO`` instance."""

    def __init__(self, socketio, namespace: str = "/"):
        self.socketio = socketio
        self.namespace = namespace

    def send(self, event: str, *args, to: Optional[str] = None, skip_sid: Optional[str] = None) -> None:
        kwargs: dict[str, Any] = {"namespace": self.namespace}
        if to is not None:
            kwargs["to"] = to
        if skip_sid is not None:
            kwargs["skip_sid"] = skip_sid
        # python-socketio sends a tuple as multiple event arguments.
        if not args:
            self.socketio.emit(event, **kwargs)
        elif len(args) == 1:
            self.socketio.emit(event, args[0], **kwargs)
        else:
            self.socketio.emit(event, tuple(args), **kwargs)


def _id_of(obj: Any) -> Optional[str]:
    """User/room id from either a bare id or an object carrying ``_id``."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        val = obj.get("_id") or obj.get("id")
        return str(val) if val not in (None, "") else None
    if isinstance(obj, (str, int)) and not isinstance(obj, bool):
        s = str(obj).strip()
        return s or None
    return None


def _member_ids(room: Any) -> Optional[list[str]]:
    """Distinct member ids from ``room["users"]`` in listed order, or None if malformed."""
    if not isinstance(room, dict):
        return None
    users = room.get("users")
    if not isinstance(users, list):
        return None
    out: list[str] = []
    for u in users:
        uid = _id_of(u)
        if uid and uid not in out:
            out.append(uid)
    return out


class RelayError(Exception):
    """A rejected relay operation. ``str(exc)`` is safe to send to the client."""


class ChatRelay:
    def __init__(self, transport, *, echo_to_sender: bool = True, call_room_max_participants: int = 0):
        self.transport = transport
        self.echo_to_sender = bool(echo_to_sender)
        self.directory = RoomDirectory()
        self.presence = PresenceRegistry(self._broadcast, self._send_to_sid)
        self.calls = CallRoomCoordinator(max_participants=call_room_max_participants)
        # Serializes presence transitions (setup / disconnect) with their broadcasts.
        self._presence_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Delivery primitives
    # ------------------------------------------------------------------
    def _broadcast(self, event: str, *args) -> None:
        self.transport.send(event, *args)

    def _send_to_sid(self, sid: str, event: str, *args) -> None:
        self.transport.send(event, *args, to=sid)

    def emit_to_room(self, room_id: str, event: str, *args) -> int:
        """Send to every connection in ``room_id``. Returns the number of sids reached."""
        sids = self.directory.members(room_id)
        for sid in sids:
            self._send_to_sid(sid, event, *args)
        return len(sids)

    def emit_to_user(self, user_id: str, event: str, *args) -> int:
        return self.emit_to_room(str(user_id), event, *args)

    def _fan_out(self, user_ids: Iterable[str], event: str, *args) -> int:
        delivered = 0
        for uid in user_ids:
            delivered += self.emit_to_user(uid, event, *args)
        return delivered

    # ------------------------------------------------------------------
    # Connection lifecycle / presence
    # ------------------------------------------------------------------
    def connect(self, sid: str, identity: Optional[str] = None) -> None:
        self.directory.add_connection(sid, identity=identity)
        logging.debug("[relay] connect sid=%s identity=%s", sid, identity)

    def setup(self, sid: str, user_data: Any) -> str:
        """Bind ``sid`` to the user in ``user_data`` and register presence."""
        user_id = _id_of(user_data)
        if not user_id:
            raise RelayError("Missing _id")

        conn = self.directory.get(sid)
        if conn is None:
            raise RelayError("Unknown connection")
        if conn.identity and conn.identity != user_id:
            raise RelayError("Identity mismatch")

        with self._presence_lock:
            if not self.directory.bind_user(sid, user_id):
                raise RelayError("Connection already bound to another user")
            self._send_to_sid(sid, "connected")
            added = self.presence.register(user_id, sid=sid)

        logging.info("[relay] setup sid=%s user=%s new_presence=%s", sid, user_id, added)
        return user_id

    def disconnect(self, sid: str) -> Optional[str]:
        """Prune every trace of ``sid``. Returns the user id if it went fully offline."""
        self.end_call(sid)

        with self._presence_lock:
            conn, remaining = self.directory.drop_connection(sid)
            if conn is None or not conn.user_id:
                return None
            if remaining > 0:
                logging.info(
                    "[relay] disconnect sid=%s user=%s (%d connection(s) remain)",
                    sid, conn.user_id, remaining,
                )
                return None
            self.presence.deregister(conn.user_id)

        logging.info("[relay] user %s offline", conn.user_id)
        return conn.user_id

    def active_users(self) -> list[str]:
        return self.presence.snapshot()

    # ------------------------------------------------------------------
    # Chat rooms and event relay
    # ------------------------------------------------------------------
    def join_chat(self, sid: str, room_id: Any) -> str:
        rid = _id_of(room_id)
        if not rid:
            raise RelayError("Missing room")
        if not self.directory.join(sid, rid):
            raise RelayError("Unknown connection")
        logging.debug("[relay] sid=%s joined room %s", sid, rid)
        return rid

    def _sender_of(self, sid: str, claimed: Any) -> Optional[str]:
        conn = self.directory.get(sid)
        if conn is not None and conn.user_id:
            return conn.user_id
        return _id_of(claimed)

    def new_message(self, sid: str, message: Any) -> int:
        if not isinstance(message, dict):
            log_dropped("newMessage", "payload is not an object", sid)
            raise RelayError("Invalid message")
        members = _member_ids(message.get("chat"))
        if members is None:
            log_dropped("newMessage", "chat.users not defined", sid)
            raise RelayError("chat.users not defined")

        if not self.echo_to_sender:
            sender = self._sender_of(sid, message.get("sender"))
            members = [m for m in members if m != sender]

        return self._fan_out(members, "messageReceived", message)

    def typing(self, sid: str, room: Any, sender: Any = None) -> int:
        members = _member_ids(room)
        room_id = _id_of(room)
        if members is None or not room_id:
            log_dropped("typing", "room without _id/users", sid)
            raise RelayError("Invalid room")
        sender_id = _id_of(sender)
        if sender_id:
            return self._fan_out(members, "typing", room_id, sender_id)
        return self._fan_out(members, "typing", room_id)

    def stop_typing(self, sid: str, room: Any) -> int:
        members = _member_ids(room)
        room_id = _id_of(room)
        if members is None or not room_id:
            log_dropped("stopTyping", "room without _id/users", sid)
            raise RelayError("Invalid room")
        return self._fan_out(members, "stopTyping", room_id)

    def init_call(self, sid: str, chat: Any, user_info: Any = None) -> int:
        members = _member_ids(chat)
        if members is None:
            log_dropped("initCall", "chat.users not defined", sid)
            raise RelayError("chat.users not defined")
        return self._fan_out(members, "notifyCall", chat, user_info)

    # ------------------------------------------------------------------
    # Call-signaling rooms
    # ------------------------------------------------------------------
    def join_call_room(self, sid: str, room_id: Any, user_info: Any = None) -> list[dict]:
        rid = _id_of(room_id)
        if not rid:
            raise RelayError("Missing roomId")
        ok, peers, previous = self.calls.join(sid, rid, user_info)
        if not ok:
            raise RelayError("Call room is full")
        if previous is not None:
            self.transport.send("userLeft", sid, skip_sid=sid)

        peer_list = [{"id": psid, "userInfo": info} for psid, info in peers]
        self._send_to_sid(sid, "allUsers", peer_list)
        logging.debug("[relay] sid=%s joined call room %s (%d peer(s))", sid, rid, len(peer_list))
        return peer_list

    def sending_signal(self, sid: str, payload: Any) -> bool:
        if not isinstance(payload, dict):
            raise RelayError("Invalid signal")
        target = _id_of(payload.get("userToSignal"))
        if not target:
            raise RelayError("Missing userToSignal")
        if not self.directory.is_connected(target):
            logging.debug("[relay] sendingSignal to unknown sid %s dropped", target)
            return False
        self._send_to_sid(
            target,
            "userJoined",
            {"signal": payload.get("signal"), "callerID": sid, "userInfo": payload.get("userInfo")},
        )
        return True

    def returning_signal(self, sid: str, payload: Any) -> bool:
        if not isinstance(payload, dict):
            raise RelayError("Invalid signal")
        target = _id_of(payload.get("callerID"))
        if not target:
            raise RelayError("Missing callerID")
        if not self.directory.is_connected(target):
            logging.debug("[relay] returningSignal to unknown sid %s dropped", target)
            return False
        self._send_to_sid(target, "receivingReturnedSignal", {"signal": payload.get("signal"), "id": sid})
        return True

    def end_call(self, sid: str) -> Optional[str]:
        room_id = self.calls.leave(sid)
        if room_id is None:
            return None
        self.transport.send("userLeft", sid, skip_sid=sid)
        logging.debug("[relay] sid=%s left call room %s", sid, room_id)
        return room_id
