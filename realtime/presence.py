"""Socket.IO handlers: connection lifecycle and presence."""

from __future__ import annotations

import logging

from flask import request

from security import Unauthorized, clear_rate_limit, extract_token, verify_token


def register(socketio, settings, relay, ctx):
    """Register connect / setup / disconnect."""
    require_auth = bool(settings.get("socket_require_auth", False))

    @socketio.on("connect")
    def handle_connect(auth=None):
        sid = request.sid
        token, source = extract_token(auth, args=request.args, cookies=request.cookies, headers=request.headers)

        identity = None
        if token:
            try:
                identity = verify_token(token)
            except Unauthorized as exc:
                # A stale cookie (e.g. the "loggedout" marker) is not an
                # explicit credential; treat it as no token.
                if source == "cookie" and not require_auth:
                    logging.debug("[socketio] ignoring unusable cookie token sid=%s: %s", sid, exc.reason)
                    token = None
                else:
                    logging.info("[socketio] refused sid=%s: %s", sid, exc.reason)
                    raise ConnectionRefusedError(exc.reason) from exc
        elif require_auth:
            logging.info("[socketio] refused sid=%s: no token", sid)
            raise ConnectionRefusedError("unauthorized")

        relay.connect(sid, identity=identity)
        if identity is not None:
            ctx.remember_token(sid, token)

    @socketio.on("setup")
    def handle_setup(user_data=None):
        return ctx.call("setup", relay.setup, user_data, throttle=False)

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        # Socket.IO may pass a reason depending on version.
        sid = request.sid
        relay.disconnect(sid)
        ctx.forget_token(sid)
        clear_rate_limit(f"sock:{sid}:")
