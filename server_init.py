#!/usr/bin/env python3
"""
server_init.py
Builds and runs the ChatRelay Flask + Socket.IO application.
"""

from __future__ import annotations

import json
import os
import logging

# Optional WebSocket support
# - Default: auto (use eventlet if available, otherwise fall back to threading/polling)
# - Override with: CHATRELAY_SOCKETIO_ASYNC=threading|eventlet
CHATRELAY_SOCKETIO_ASYNC = os.environ.get("CHATRELAY_SOCKETIO_ASYNC", "auto").strip().lower()
_EVENTLET_AVAILABLE = False
if CHATRELAY_SOCKETIO_ASYNC in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
        _EVENTLET_AVAILABLE = True
    except ImportError:
        _EVENTLET_AVAILABLE = False
import secrets
import sys
from datetime import timedelta, datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from flask import Flask, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO, emit, disconnect

from constants import APP_VERSION
from realtime.relay import ChatRelay, SocketIOTransport
from routes_main import register_main_routes
from secrets_policy import persist_secrets_enabled, scrub_secrets_for_persist
from security import Unauthorized
from socket_handlers import register_socketio_handlers


# Default Content-Security-Policy header.
DEFAULT_CSP = (
    "default-src 'self' data: blob:; "
    "base-uri 'self'; "
    "font-src 'self' https: data:; "
    "script-src 'self' https://*.cloudflare.com data:; "
    "frame-src 'self'; "
    "object-src 'none'; "
    "style-src 'self' https: 'unsafe-inline'; "
    "worker-src 'self' data: blob:; "
    "child-src 'self' blob:; "
    "img-src 'self' data: blob:; "
    "connect-src 'self' blob: ws: wss:; "
    "upgrade-insecure-requests"
)


def _normalize_cors_origins(val):
    if val is None:
        return None
    if isinstance(val, str):
        raw = val.strip()
        if not raw:
            return None
        # Support comma-separated strings
        if "," in raw:
            items = [x.strip() for x in raw.split(",") if x.strip()]
            return items or None
        return raw
    if isinstance(val, (list, tuple, set)):
        items = [str(x).strip() for x in val if str(x).strip()]
        return items or None
    return None


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path], async_mode: str) -> None:
    cfg_path = Path(settings_file) if settings_file else None
    cfg_exists = bool(cfg_path and cfg_path.exists())
    logging.info("==================== ChatRelay Boot ====================")
    logging.info("ChatRelay version: %s", APP_VERSION)
    logging.info("Settings file: %s (exists=%s)", str(cfg_path) if cfg_path else "<none>", cfg_exists)
    logging.info(
        "Socket.IO async_mode=%s require_auth=%s echo_to_sender=%s",
        async_mode,
        bool(settings.get("socket_require_auth", False)),
        bool(settings.get("echo_to_sender", True)),
    )
    logging.info("========================================================")


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    This function does **not** start a server. It is safe to import from a
    Gunicorn `wsgi.py` module. The ChatRelay instance is exposed as
    ``app.config["CHATRELAY_RELAY"]``.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["CHATRELAY_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    app.config["CHATRELAY_SETTINGS"] = settings

    app.secret_key = _ensure_secret("secret_key", settings, settings_file)

    cookie_secure = bool(settings.get("cookie_secure", False) or settings.get("https", False))
    cookie_samesite = settings.get("cookie_samesite") or "Lax"

    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_secret("jwt_secret", settings, settings_file),
        # Browsers send the cookie; native clients use the Authorization header.
        JWT_TOKEN_LOCATION=["headers", "cookies"],
        JWT_ACCESS_COOKIE_NAME="jwt",
        # The account service signs {"id": <user id>}, not the default "sub".
        JWT_IDENTITY_CLAIM=str(settings.get("identity_claim") or "id"),
        JWT_COOKIE_SECURE=cookie_secure,
        JWT_COOKIE_SAMESITE=cookie_samesite,
        JWT_COOKIE_CSRF_PROTECT=True,
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(minutes=int(settings.get("access_token_minutes", 30))),
        MAX_CONTENT_LENGTH=int(settings.get("max_content_length") or 10 * 1024),
    )

    JWTManager(app)

    # ------------------------------------------------------------------
    # Baseline security headers
    # ------------------------------------------------------------------
    # Override via server_config.json:
    #   - content_security_policy
    #   - permissions_policy
    #   - x_frame_options
    #   - referrer_policy
    #   - hsts_max_age / hsts_include_subdomains / hsts_preload
    @app.after_request
    def _add_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault(
            "Referrer-Policy",
            str(settings.get("referrer_policy") or "strict-origin-when-cross-origin"),
        )
        resp.headers.setdefault("X-Frame-Options", str(settings.get("x_frame_options") or "DENY"))
        resp.headers.setdefault(
            "Permissions-Policy",
            str(settings.get("permissions_policy") or "geolocation=(), camera=(self), microphone=(self)"),
        )
        resp.headers.setdefault(
            "Content-Security-Policy",
            str(settings.get("content_security_policy") or DEFAULT_CSP),
        )

        # Only send HSTS when HTTPS is in use.
        if cookie_secure:
            max_age = int(settings.get("hsts_max_age") or 31536000)
            hsts = f"max-age={max_age}"
            if bool(settings.get("hsts_include_subdomains", True)):
                hsts += "; includeSubDomains"
            if bool(settings.get("hsts_preload", False)):
                hsts += "; preload"
            resp.headers.setdefault("Strict-Transport-Security", hsts)
        return resp

    # ------------------------------------------------------------------
    # CORS (hardened defaults)
    # ------------------------------------------------------------------
    # Default: CORS is OFF unless explicitly configured. "*" is refused because
    # the access token may travel in a credentialed cookie.
    cors_origins = _normalize_cors_origins(settings.get("cors_allowed_origins"))
    if cors_origins == "*" or (isinstance(cors_origins, list) and "*" in cors_origins):
        logging.warning("CORS origins includes '*'. Disabling CORS because ChatRelay uses credentialed cookies.")
        cors_origins = None
    if cors_origins is not None:
        CORS(app, supports_credentials=True, origins=cors_origins)

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(key_func=get_remote_address, storage_uri=storage_uri)
    limiter.init_app(app)

    # ───── SocketIO Setup ─────
    async_mode = "threading"
    if CHATRELAY_SOCKETIO_ASYNC == "eventlet" and not _EVENTLET_AVAILABLE:
        print("[socketio] CHATRELAY_SOCKETIO_ASYNC=eventlet but eventlet is not installed; falling back to threading")
    if (CHATRELAY_SOCKETIO_ASYNC in {"auto", "eventlet"}) and _EVENTLET_AVAILABLE:
        async_mode = "eventlet"
    app.config["CHATRELAY_SOCKETIO_ASYNC_MODE"] = async_mode

    _log_startup_banner(settings, settings_file, async_mode)

    # Relay state lives in this process, so no cross-process message queue.
    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=cors_origins,
        logger=False,
        engineio_logger=False,
        ping_interval=20,
        ping_timeout=15,
    )
    app.config["CHATRELAY_SOCKETIO"] = socketio

    relay = ChatRelay(
        SocketIOTransport(socketio),
        echo_to_sender=bool(settings.get("echo_to_sender", True)),
        call_room_max_participants=int(settings.get("call_room_max_participants") or 0),
    )
    app.config["CHATRELAY_RELAY"] = relay

    # ───── Global Socket.IO Error Handler ─────
    # Auth problems raised inside handlers become a client-visible signal plus
    # a disconnect so the client can re-authenticate.
    @socketio.on_error_default  # applies to all namespaces
    def _socketio_default_error_handler(e):
        sid = getattr(request, "sid", None)

        if isinstance(e, Unauthorized):
            if sid:
                emit("auth_error", {"reason": e.reason}, to=sid)
                disconnect(sid=sid)
            return {"success": False, "error": e.reason}

        # Everything else: log it, but keep the server thread alive.
        app.logger.exception("Socket.IO handler error: %s", e)
        return {"success": False, "error": "server_error"}

    # ───── Routes ─────
    register_main_routes(app, settings, relay, limiter=limiter)
    register_socketio_handlers(socketio, settings, relay)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] | None = None,
    settings_file: Optional[Path] | None = None,
) -> None:
    """Bootstrap the Flask-SocketIO app, attach routes & handlers, then run it."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    # ───── Run Server (dev / single-process) ─────
    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 3000)
    debug = bool(settings.get("debug") or False)

    https_enabled = bool(settings.get("https", False))
    ssl_cert = settings.get("ssl_cert_file")
    ssl_key = settings.get("ssl_key_file")
    ssl_context = None

    if https_enabled:
        if ssl_cert and ssl_key and os.path.exists(str(ssl_cert)) and os.path.exists(str(ssl_key)):
            ssl_context = (str(ssl_cert), str(ssl_key))
        else:
            print("⚠️  https=true but ssl_cert_file/ssl_key_file missing or not found. Falling back to HTTP.")
            https_enabled = False

    scheme = "https" if https_enabled else "http"
    print(f"🚀  Starting ChatRelay on {scheme}://{host}:{port} (debug={debug})")

    # Filter Werkzeug access logs for /socket.io long-polling.
    class _SocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:  # type: ignore
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_SocketIOAccessFilter())

    use_reloader = bool(debug and app.config.get("CHATRELAY_SOCKETIO_ASYNC_MODE") == "threading")
    kwargs: Dict[str, Any] = {}
    if ssl_context is not None:
        kwargs["ssl_context"] = ssl_context
    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        use_reloader=use_reloader,
        log_output=False,
        **kwargs,
    )


# ───── Helpers ─────
# setting name -> (env vars consulted, generator, what breaks if it is not saved)
_GENERATED_SECRETS = {
    "secret_key": (("SECRET_KEY",), lambda: secrets.token_urlsafe(64), "Sessions may break on restart."),
    "jwt_secret": (
        ("JWT_SECRET_KEY",),
        lambda: secrets.token_hex(32),
        "Tokens from the account service will not verify.",
    ),
}


def _ensure_secret(name: str, settings: Dict[str, Any], settings_file: Optional[Path]) -> str:
    """Configured value, then env, else generate (and persist when allowed)."""
    env_names, generate, warning = _GENERATED_SECRETS[name]
    value = settings.get(name)
    if name == "jwt_secret":
        value = value or settings.get("jwt_secret_key")
    if value:
        return str(value)
    for env_name in env_names:
        env_value = (os.getenv(env_name) or "").strip()
        if env_value:
            return env_value

    value = generate()
    settings[name] = value
    if _persist_generated_key(settings, settings_file):
        print(f"✅ {name} generated and saved to settings.")
    else:
        print(f"⚠️  Generated a one-off {name} (NOT saved). {warning}")
    return value


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    if not persist_secrets_enabled():
        return False
    if not settings_file:
        return False

    suffix = settings_file.suffix.lower()
    if suffix not in {".json", ".yml", ".yaml"}:
        print(f"⚠️  Unsupported settings file format: {settings_file}")
        return False

    try:
        existing: dict | None = {}
        if settings_file.exists():
            with settings_file.open("r", encoding="utf-8") as fp:
                try:
                    loaded = yaml.safe_load(fp) if suffix != ".json" else json.load(fp)
                except (ValueError, yaml.YAMLError):
                    loaded = False
            if loaded is None:
                existing = {}
            else:
                existing = loaded if isinstance(loaded, dict) else None

        # Never overwrite a settings file we could not parse; back it up first.
        if existing is None:
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            bad_path = settings_file.with_suffix(settings_file.suffix + f".bad-{ts}")
            settings_file.rename(bad_path)
            print(f"⚠️  Backed up invalid settings file to: {bad_path}")
            existing = {}

        merged = dict(existing or {})
        merged.update(scrub_secrets_for_persist(settings))

        settings_file.parent.mkdir(parents=True, exist_ok=True)
        with settings_file.open("w", encoding="utf-8") as fp:
            if suffix == ".json":
                json.dump(merged, fp, indent=2)
            else:
                yaml.safe_dump(merged, fp, sort_keys=False)
    except OSError as exc:
        print(f"⚠️  Could not persist secrets to {settings_file}: {exc}", file=sys.stderr)
        return False

    return True
