"""wsgi.py

Gunicorn entrypoint::

    gunicorn -c gunicorn_conf.py wsgi:app

The settings file comes from CHATRELAY_CONFIG (default server_config.json).
"""

from __future__ import annotations

import os

# eventlet must patch the stdlib before Flask and the relay import it.
if os.environ.get("CHATRELAY_SOCKETIO_ASYNC", "auto").strip().lower() in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
    except ImportError:
        pass

from pathlib import Path

from constants import CONFIG_FILE
from main import apply_env_overrides, configure_logging, load_settings
from server_init import create_app

settings_path = Path(os.environ.get("CHATRELAY_CONFIG") or CONFIG_FILE)
settings = load_settings(settings_path)
apply_env_overrides(settings)
configure_logging(settings)

app, socketio = create_app(settings, settings_file=settings_path)
