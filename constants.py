#!/usr/bin/env python3

from __future__ import annotations

import os
from typing import Any, Dict


# Application version (semantic-ish). Used for /health + packaging.
APP_VERSION = "1.0.0"

# Path to the JSON (or YAML) server configuration file
CONFIG_FILE = "server_config.json"


def get_default_settings() -> Dict[str, Any]:
    """Return a compact set of defaults for ChatRelay.

    Notes:
      - Keep secrets out of JSON when possible; prefer env vars.
      - server_init.py will generate/persist secret_key + jwt_secret if missing.
    """
    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "ChatRelay",
        "host": "0.0.0.0",
        "port": int(os.getenv("PORT") or 3000),
        "debug": False,
        "https": False,
        "ssl_cert_file": "",
        "ssl_key_file": "",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",

        # ── Auth / cookies ───────────────────────────────────────────────
        "cookie_secure": False,
        "cookie_samesite": "Lax",
        "access_token_minutes": 30,
        # Claim carrying the user id in access tokens.
        "identity_claim": "id",
        # When true, Socket.IO connections without a valid access token are refused.
        "socket_require_auth": False,

        # ── Relay policy ─────────────────────────────────────────────────
        # Forward newMessage back to the sender's own connections (multi-device sync).
        "echo_to_sender": True,
        # 0 = unlimited
        "call_room_max_participants": 0,
        "socket_event_rate_limit": "120 per minute",

        # ── HTTP hardening ───────────────────────────────────────────────
        "cors_allowed_origins": None,
        "api_rate_limit": "100 per hour",
        "rate_limit_storage_uri": "memory://",
        "max_content_length": 10 * 1024,

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file_path": "logs/server.log",
    }
