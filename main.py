#!/usr/bin/env python3
"""main.py

ChatRelay server entrypoint.

Settings are read from ``server_config.json`` (or a ``.yml``/``.yaml`` file
given with ``--config``), layered over built-in defaults, then overridden by
environment variables. Prefer env vars (``SECRET_KEY``, ``JWT_SECRET_KEY``)
for secrets.
"""

from __future__ import annotations

import argparse
from datetime import datetime
import json
import logging
import os
import sys
from pathlib import Path

import yaml

from constants import CONFIG_FILE, get_default_settings
from secrets_policy import env_bool
from server_init import run_web_server


def configure_logging(settings: dict) -> None:
    """Configure file logging."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(logging.Formatter(log_format))
    logging.getLogger().addHandler(stream)
    logging.info("Logging configured (level=%s)", log_level_str)


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in {".yml", ".yaml"}


def load_settings(path: Path) -> dict:
    """Load settings from JSON/YAML over the defaults. Returns defaults if missing."""
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            loaded = yaml.safe_load(fp) if _is_yaml(path) else json.load(fp)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"⚠️  Could not parse {path}: {exc}")
        # Back the broken file up so generated secrets can be persisted into a
        # fresh file.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            print(f"⚠️  Backed up invalid settings file to: {bad_path}")
        except OSError as e2:
            print(f"⚠️  Could not back up invalid settings file: {e2}")
        print("⚠️  Falling back to defaults.")
        return settings

    if isinstance(loaded, dict):
        settings.update(loaded)
    return settings


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _bool_env(*names: str) -> bool | None:
        for n in names:
            if os.getenv(n) is not None:
                return env_bool(n, False)
        return None

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    secret = _str_env("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "CHATRELAY_JWT_SECRET", "ACCESS_TOKEN_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    host = _str_env("CHATRELAY_HOST")
    if host:
        settings["host"] = host

    port = _int_env("CHATRELAY_PORT", "PORT")
    if port:
        settings["port"] = port

    identity_claim = _str_env("CHATRELAY_IDENTITY_CLAIM")
    if identity_claim:
        settings["identity_claim"] = identity_claim

    require_auth = _bool_env("CHATRELAY_SOCKET_REQUIRE_AUTH")
    if require_auth is not None:
        settings["socket_require_auth"] = require_auth

    echo = _bool_env("CHATRELAY_ECHO_TO_SENDER")
    if echo is not None:
        settings["echo_to_sender"] = echo

    max_peers = _int_env("CHATRELAY_CALL_ROOM_MAX_PARTICIPANTS")
    if max_peers is not None:
        settings["call_room_max_participants"] = max_peers

    origins = _str_env("CHATRELAY_CORS_ALLOWED_ORIGINS")
    if origins:
        settings["cors_allowed_origins"] = origins

    log_level = _str_env("CHATRELAY_LOG_LEVEL")
    if log_level:
        settings["log_level"] = log_level


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ChatRelay server")
    p.add_argument("--config", default=CONFIG_FILE, help="path to server config JSON/YAML")
    return p.parse_args(argv)


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    configure_logging(settings)

    run_web_server(settings, limiter=None, settings_file=settings_path)


if __name__ == "__main__":
    main()
