"""gunicorn_conf.py

Default Gunicorn config for ChatRelay + Flask-SocketIO using Eventlet.

Environment variables:
  CHATRELAY_BIND=0.0.0.0:3000
  CHATRELAY_GUNICORN_LOGLEVEL=info
  CHATRELAY_GUNICORN_ACCESSLOG=-
  CHATRELAY_GUNICORN_ERRORLOG=-
  CHATRELAY_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("CHATRELAY_BIND", "0.0.0.0:3000")
# The relay keeps presence/rooms in memory; more workers would split that state.
workers = 1
worker_class = "eventlet"

# WebSockets keep connections open; avoid overly low timeouts.
timeout = int(os.environ.get("CHATRELAY_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("CHATRELAY_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("CHATRELAY_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("CHATRELAY_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("CHATRELAY_GUNICORN_ERRORLOG", "-")

# Important for Socket.IO upgrades through reverse proxies.
forwarded_allow_ips = os.environ.get("CHATRELAY_FORWARDED_ALLOW_IPS", "*")
