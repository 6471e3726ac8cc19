"""In-memory realtime state for the relay.

Nothing here is persisted. A restart begins empty and clients re-issue
setup/joinChat/joinRoom on reconnect.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Connection:
    sid: str
    identity: Optional[str] = None
    user_id: Optional[str] = None
    rooms: set[str] = field(default_factory=set)


class PresenceRegistry:
    """Ordered set of user ids with at least one live, set-up connection."""

    def __init__(self, broadcast, send_to):
        # broadcast(event, *args): every connection; send_to(sid, event, *args): one connection
        self._broadcast = broadcast
        self._send_to = send_to
        self._active: list[str] = []
        self._lock = threading.Lock()

    def register(self, user_id: str, sid: Optional[str] = None) -> bool:
        """Add ``user_id`` if absent.

        ``sid`` (the registering connection) always gets the full list as
        ``active``; everyone gets ``globalActive`` only when the set changed.
        """
        with self._lock:
            added = user_id not in self._active
            if added:
                self._active.append(user_id)
            snapshot = list(self._active)
        if sid is not None:
            self._send_to(sid, "active", snapshot)
        if added:
            self._broadcast("globalActive", snapshot)
        return added

    def deregister(self, user_id: str) -> bool:
        with self._lock:
            if user_id not in self._active:
                return False
            self._active.remove(user_id)
        self._broadcast("inactive", user_id)
        return True

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._active


class RoomDirectory:
    """Connection table plus room -> sids membership.

    A user's personal room is the room named after the user id. "Deliver to
    user X" means "deliver to every sid in room X".
    """

    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def add_connection(self, sid: str, identity: Optional[str] = None) -> Connection:
        with self._lock:
            conn = self._connections.get(sid)
            if conn is None:
                conn = Connection(sid=sid, identity=identity)
                self._connections[sid] = conn
            elif identity and not conn.identity:
                conn.identity = identity
            return conn

    def get(self, sid: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(sid)

    def is_connected(self, sid: str) -> bool:
        with self._lock:
            return sid in self._connections

    def bind_user(self, sid: str, user_id: str) -> bool:
        """Bind ``sid`` to ``user_id`` and join its personal room.

        The binding is set once. Returns False if the sid is unknown or
        already bound to a different user.
        """
        with self._lock:
            conn = self._connections.get(sid)
            if conn is None:
                return False
            if conn.user_id is not None and conn.user_id != user_id:
                return False
            conn.user_id = user_id
            self._join_locked(conn, user_id)
            return True

    def join(self, sid: str, room_id: str) -> bool:
        with self._lock:
            conn = self._connections.get(sid)
            if conn is None:
                return False
            self._join_locked(conn, room_id)
            return True

    def _join_locked(self, conn: Connection, room_id: str) -> None:
        conn.rooms.add(room_id)
        self._rooms.setdefault(room_id, set()).add(conn.sid)

    def members(self, room_id: str) -> list[str]:
        with self._lock:
            return sorted(self._rooms.get(room_id) or ())

    def all_sids(self) -> list[str]:
        with self._lock:
            return list(self._connections)

    def drop_connection(self, sid: str) -> tuple[Optional[Connection], int]:
        """Remove ``sid`` from every room it joined.

        Returns the removed connection and the number of connections still in
        its personal room, both taken under one lock.
        """
        with self._lock:
            conn = self._connections.pop(sid, None)
            if conn is None:
                return None, 0
            for room_id in conn.rooms:
                sids = self._rooms.get(room_id)
                if not sids:
                    continue
                sids.discard(sid)
                if not sids:
                    del self._rooms[room_id]
            remaining = 0
            if conn.user_id:
                for other in self._rooms.get(conn.user_id) or ():
                    other_conn = self._connections.get(other)
                    if other_conn is not None and other_conn.user_id == conn.user_id:
                        remaining += 1
            return conn, remaining


class CallRoomCoordinator:
    """Call-signaling rooms: room id -> [(sid, user_info), ...].

    Empty rooms are kept until the process restarts.
    """

    def __init__(self, max_participants: int = 0):
        # 0 (or <=0) means unlimited.
        self.max_participants = max(0, int(max_participants or 0))
        self._rooms: dict[str, list[tuple[str, Any]]] = {}
        self._sid_room: dict[str, str] = {}
        self._lock = threading.Lock()

    def join(self, sid: str, room_id: str, user_info: Any) -> tuple[bool, list[tuple[str, Any]], Optional[str]]:
        """Add ``sid`` to ``room_id``.

        Returns (ok, peers_excluding_self, previous_room_left).
        """
        with self._lock:
            previous = self._sid_room.get(sid)
            participants = self._rooms.setdefault(room_id, [])
            if previous == room_id:
                for i, (psid, _) in enumerate(participants):
                    if psid == sid:
                        participants[i] = (sid, user_info)
                        break
                else:
                    participants.append((sid, user_info))
                return True, [p for p in participants if p[0] != sid], None

            if self.max_participants and len(participants) >= self.max_participants:
                return False, list(participants), None

            if previous is not None:
                self._remove_locked(sid, previous)
            participants.append((sid, user_info))
            self._sid_room[sid] = room_id
            return True, [p for p in participants if p[0] != sid], previous

    def leave(self, sid: str) -> Optional[str]:
        """Remove ``sid`` from its call room. Returns the room id, or None."""
        with self._lock:
            room_id = self._sid_room.get(sid)
            if room_id is None:
                return None
            self._remove_locked(sid, room_id)
            return room_id

    def _remove_locked(self, sid: str, room_id: str) -> None:
        self._sid_room.pop(sid, None)
        participants = self._rooms.get(room_id)
        if participants is not None:
            participants[:] = [p for p in participants if p[0] != sid]

    def participants(self, room_id: str) -> list[tuple[str, Any]]:
        with self._lock:
            return list(self._rooms.get(room_id) or ())

    def room_of(self, sid: str) -> Optional[str]:
        with self._lock:
            return self._sid_room.get(sid)

    def room_ids(self) -> list[str]:
        with self._lock:
            return list(self._rooms)


def log_dropped(event: str, reason: str, sid: str | None = None) -> None:
    logging.warning("[relay] dropped %s from %s: %s", event, sid or "?", reason)
