#!/usr/bin/env python3
"""
routes_main.py
Operational HTTP endpoints: health check, presence snapshot and the JSON
error envelope for /api paths.
"""

from __future__ import annotations

from flask import jsonify, request
from flask_jwt_extended import jwt_required
from werkzeug.exceptions import HTTPException

from constants import APP_VERSION


def register_main_routes(app, settings, relay, limiter=None):
    """Attach /health, /api/v1/presence and API error handlers to ``app``."""

    api_limit = str(settings.get("api_rate_limit") or "100 per hour")

    def _limited(fn):
        if limiter is None:
            return fn
        return limiter.limit(
            api_limit,
            error_message="Too many requests from this IP, please try again in an hour",
        )(fn)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok", "version": APP_VERSION})

    @app.route("/api/v1/presence", methods=["GET"])
    @_limited
    @jwt_required()
    def presence_snapshot():
        users = relay.active_users()
        return jsonify({"status": "success", "results": len(users), "data": users})

    # ───── Error envelope for /api ─────
    @app.errorhandler(HTTPException)
    def _api_http_error(exc: HTTPException):
        if not request.path.startswith("/api/"):
            return exc
        code = exc.code or 500
        if code == 404:
            message = f"Cannot find {request.path} on this server"
        else:
            message = exc.description or exc.name
        status = "fail" if 400 <= code < 500 else "error"
        return jsonify({"status": status, "message": message}), code
