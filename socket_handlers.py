#!/usr/bin/env python3
"""
socket_handlers.py

Socket.IO event handlers for the ChatRelay server. Each handler translates
one transport event into a ChatRelay call and returns an acknowledgement
dict ({"success": bool, ...}) that clients may ignore.

Connections that authenticated on the handshake have their token checked
again before every event. An expired or revoked token raises
``Unauthorized`` out of the handler; the default error handler in
server_init turns that into ``auth_error`` plus a disconnect.
"""

from __future__ import annotations

import logging
import threading
from types import SimpleNamespace

from flask import request

from realtime.relay import RelayError
from security import parse_limit_value, simple_rate_limit, verify_token


def register_socketio_handlers(socketio, settings, relay):
    """Register all Socket.IO event handlers against ``relay``."""

    event_limit, event_window = parse_limit_value(
        settings.get("socket_event_rate_limit"), default_limit=120, default_window=60,
    )

    # sid -> handshake token, only for connections that presented a valid one
    session_tokens: dict[str, str] = {}
    tokens_lock = threading.Lock()

    def _remember_token(sid: str, token: str) -> None:
        with tokens_lock:
            session_tokens[sid] = token

    def _forget_token(sid: str) -> None:
        with tokens_lock:
            session_tokens.pop(sid, None)

    def _reverify() -> None:
        with tokens_lock:
            token = session_tokens.get(request.sid)
        if token is not None:
            verify_token(token)

    def _throttle(event: str) -> dict | None:
        """Per-connection sliding window. Returns an error ack when over the limit."""
        sid = request.sid
        ok, retry = simple_rate_limit(f"sock:{sid}:{event}", event_limit, event_window)
        if ok:
            return None
        logging.warning("[socketio] rate limited %s from sid=%s", event, sid)
        return {"success": False, "error": "Rate limited", "retry_after": retry}

    def _call(event: str, fn, *args, throttle: bool = True, **kwargs):
        """Run a relay operation for the current sid and shape the ack."""
        _reverify()
        if throttle:
            limited = _throttle(event)
            if limited:
                return limited
        try:
            result = fn(request.sid, *args, **kwargs)
        except RelayError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "result": result}

    # ───────────────────────────────────────────────────────────────────
    # Register split handler modules (see realtime/*.py)
    # ───────────────────────────────────────────────────────────────────
    ctx = SimpleNamespace(
        call=_call,
        throttle=_throttle,
        remember_token=_remember_token,
        forget_token=_forget_token,
    )
    from realtime import presence, rooms, voice
    presence.register(socketio, settings, relay, ctx)
    rooms.register(socketio, settings, relay, ctx)
    voice.register(socketio, settings, relay, ctx)
