#!/usr/bin/env python3
"""security.py

Credential checks and request throttling shared by HTTP routes and
Socket.IO handlers.

Tokens are issued by the account service; this server only verifies them
with the shared ``jwt_secret`` (Flask-JWT-Extended, HS256 by default).
"""

from __future__ import annotations

import re
import threading
import time
from collections import deque
from typing import Any, Optional

from flask import current_app
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import ExpiredSignatureError, PyJWTError


class Unauthorized(Exception):
    """Token missing, invalid or expired. ``reason`` is safe to show clients."""

    def __init__(self, reason: str = "unauthorized"):
        super().__init__(reason)
        self.reason = reason


# ────────────────────────────────────────────────────────────
# Token verification
# ────────────────────────────────────────────────────────────

def verify_token(token: Optional[str]) -> str:
    """Return the user id carried by an access token.

    Raises Unauthorized on a missing, malformed, expired or non-access token.
    Must run inside an application context.
    """
    if not token or not isinstance(token, str):
        raise Unauthorized("unauthorized")

    try:
        claims = decode_token(token.strip())
    except ExpiredSignatureError as exc:
        raise Unauthorized("jwt_expired") from exc
    except (PyJWTError, JWTExtendedException) as exc:
        raise Unauthorized("unauthorized") from exc

    if claims.get("type", "access") != "access":
        raise Unauthorized("unauthorized")

    identity_claim = current_app.config.get("JWT_IDENTITY_CLAIM", "id")
    user_id = claims.get(identity_claim)
    if user_id in (None, ""):
        raise Unauthorized("unauthorized")
    return str(user_id)


def extract_token(auth: Any, args=None, cookies=None, headers=None) -> tuple[Optional[str], Optional[str]]:
    """Pick a bearer token from the Socket.IO handshake.

    Order: ``auth={"token": ...}``, ``?token=``, ``Authorization: Bearer``,
    then the JWT access cookie. Returns ``(token, source)`` where source is
    one of "auth", "query", "header", "cookie", or ``(None, None)``.
    """
    if isinstance(auth, dict):
        tok = auth.get("token")
        if isinstance(tok, str) and tok.strip():
            return tok.strip(), "auth"

    if args is not None:
        tok = args.get("token")
        if tok:
            return str(tok).strip(), "query"

    if headers is not None:
        header = headers.get("Authorization") or ""
        if header.lower().startswith("bearer "):
            tok = header[7:].strip()
            if tok:
                return tok, "header"

    if cookies is not None:
        cookie_name = current_app.config.get("JWT_ACCESS_COOKIE_NAME", "access_token_cookie")
        tok = cookies.get(cookie_name)
        if tok:
            return str(tok), "cookie"

    return None, None


# ────────────────────────────────────────────────────────────
# Small in-process rate limiter
# ────────────────────────────────────────────────────────────
#
# Used for per-connection Socket.IO event throttling. HTTP routes use
# Flask-Limiter.

_SRL_BUCKETS: dict[str, deque] = {}
_SRL_LOCK = threading.Lock()


def simple_rate_limit(key: str, limit: int, window_sec: int) -> tuple[bool, float]:
    """Sliding-window limiter.

    Returns (ok, retry_after_seconds).
    """
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = 0
    try:
        window_sec = int(window_sec)
    except (TypeError, ValueError):
        window_sec = 0

    if limit <= 0 or window_sec <= 0:
        return True, 0.0

    now = time.time()
    with _SRL_LOCK:
        dq = _SRL_BUCKETS.get(key)
        if dq is None:
            dq = deque()
            _SRL_BUCKETS[key] = dq
        cutoff = now - window_sec
        while dq and dq[0] < cutoff:
            dq.popleft()
        if len(dq) >= limit:
            retry = (dq[0] + window_sec) - now
            return False, max(0.0, float(retry))
        dq.append(now)
        return True, 0.0


def clear_rate_limit(prefix: str) -> None:
    """Forget every bucket whose key starts with ``prefix`` (e.g. on disconnect)."""
    with _SRL_LOCK:
        for key in [k for k in _SRL_BUCKETS if k.startswith(prefix)]:
            del _SRL_BUCKETS[key]


_UNIT_SECONDS = {
    "second": 1, "sec": 1, "s": 1,
    "minute": 60, "min": 60, "m": 60,
    "hour": 3600, "h": 3600,
    "day": 86400, "d": 86400,
}


def parse_limit_value(val, default_limit: int, default_window: int) -> tuple[int, int]:
    """Parse either an int (per-minute) or a human string (e.g. '10 per minute').

    Accepts "10 per minute", "10/min", "30@10" (30 per 10 seconds).
    Returns (limit, window_seconds).
    """
    if val is None:
        return int(default_limit), int(default_window)
    if isinstance(val, bool):
        return int(default_limit), int(default_window)
    if isinstance(val, (int, float)):
        lim = int(val)
        return (lim if lim > 0 else int(default_limit)), 60
    if isinstance(val, str):
        s = val.strip().lower()
        m = re.match(r"^(\d+)\s*@\s*(\d+)$", s)
        if m:
            return int(m.group(1)), int(m.group(2))
        m = re.match(r"^(\d+)\s*(?:per|/)\s*(\d+\s*)?(second|sec|s|minute|min|m|hour|h|day|d)s?$", s)
        if m:
            count = int(m.group(2)) if m.group(2) else 1
            return int(m.group(1)), count * _UNIT_SECONDS[m.group(3)]
    return int(default_limit), int(default_window)
