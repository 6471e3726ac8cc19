import os

# Must be set before server_init is imported (it may monkey-patch eventlet).
os.environ.setdefault("CHATRELAY_SOCKETIO_ASYNC", "threading")
os.environ.setdefault("CHATRELAY_PERSIST_SECRETS", "0")

from dataclasses import dataclass
from typing import Any, Optional

import pytest
from flask_jwt_extended import create_access_token

from constants import get_default_settings
from realtime.relay import ChatRelay


@dataclass
class Sent:
    event: str
    args: tuple
    to: Optional[str]
    skip_sid: Optional[str]


class RecordingTransport:
    """Captures relay sends instead of talking to Socket.IO."""

    def __init__(self):
        self.sent: list[Sent] = []

    def send(self, event, *args, to=None, skip_sid=None):
        self.sent.append(Sent(event, tuple(args), to, skip_sid))

    def events(self, name: str) -> list[Sent]:
        return [s for s in self.sent if s.event == name]

    def to(self, sid: str) -> list[Sent]:
        return [s for s in self.sent if s.to == sid]

    def broadcasts(self) -> list[Sent]:
        return [s for s in self.sent if s.to is None]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def relay(transport):
    return ChatRelay(transport)


@pytest.fixture
def settings(tmp_path) -> dict[str, Any]:
    s = get_default_settings()
    s.update(
        {
            "secret_key": "test-secret-key",
            "jwt_secret": "test-jwt-secret-that-is-long-enough-for-hs256",
            "log_file_path": str(tmp_path / "server.log"),
        }
    )
    return s


@pytest.fixture
def make_app(settings):
    from server_init import create_app

    def _make(**overrides):
        s = dict(settings)
        s.update(overrides)
        return create_app(s)

    return _make


@pytest.fixture
def app_and_socketio(make_app):
    return make_app()


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture
def make_token():
    def _make(app, identity: str, **kwargs) -> str:
        with app.app_context():
            return create_access_token(identity=identity, **kwargs)

    return _make
