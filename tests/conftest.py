"""Pytest configuration and fixtures."""

import inspect
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Keep log files and the token file out of the working tree and the home directory
_TEST_ROOT = tempfile.mkdtemp(prefix="telehealth_chat_tests_")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_DIR", os.path.join(_TEST_ROOT, "logs"))
os.environ.setdefault("TOKEN_FILE", os.path.join(_TEST_ROOT, "auth_token"))

import httpx
import pytest
from jose import jwt
from socketio.exceptions import ConnectionError as SocketConnectionError

from telehealth_chat.config import Settings
from telehealth_chat.utils.token_store import TokenStore

PATIENT_ID = "patient-1"
PHARMACY_ID = "pharmacy-9"
DOCTOR_ID = "doctor-3"
ORDER_ID = "order-A"


def make_token(user_id: str, role: str = "patient") -> str:
    return jwt.encode({"userId": user_id, "role": role}, "test-secret", algorithm="HS256")


def now_iso(offset_seconds: float = 0) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=offset_seconds)).isoformat()


class FakeSocket:
    """Stands in for `socketio.AsyncClient`: records emits and lets tests fire server events."""

    def __init__(self, fail_connects: int = 0, auto_authenticate: bool = True):
        self.handlers = {}
        self.emitted = []
        self.replies = {}
        self.fail_connects = fail_connects
        self.auto_authenticate = auto_authenticate
        self.connect_calls = 0
        self.connected = False
        self.url = None
        self.auth = None

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, transports=None, auth=None):
        self.connect_calls += 1
        self.url = url
        self.auth = auth
        if self.connect_calls <= self.fail_connects:
            raise SocketConnectionError("Connection refused by the server")
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def emit(self, event, data=None):
        self.emitted.append((event, data))
        if event == "authenticate" and self.auto_authenticate:
            await self.fire("authenticated", {"userId": data})
        reply = self.replies.get(event)
        if reply is not None:
            for reply_event, payload in reply(data):
                await self.fire(reply_event, payload)

    async def fire(self, event, *args):
        handler = self.handlers.get(event)
        if handler is None:
            return
        result = handler(*args)
        if inspect.isawaitable(result):
            await result

    def emitted_events(self):
        return [event for event, _ in self.emitted]

    def payloads(self, event):
        return [data for name, data in self.emitted if name == event]


@pytest.fixture
def settings(tmp_path):
    """Settings with timings shrunk so tests run fast."""
    return Settings(
        LOG_DIR=str(tmp_path / "logs"),
        TOKEN_FILE=str(tmp_path / "auth_token"),
        RECONNECTION_DELAY_SECONDS=0.0,
        RECONNECTION_ATTEMPTS=5,
        AUTHENTICATION_TIMEOUT_SECONDS=0.2,
        REQUEST_TIMEOUT_SECONDS=1.0,
        REQUEST_RETRIES=2,
        RETRY_BACKOFF_SECONDS=2.0,
        OPTIMISTIC_CONFIRM_SECONDS=0.05,
        SCROLL_NEAR_BOTTOM_PX=100,
        SCROLL_DEBOUNCE_SECONDS=0.02,
        SCROLL_SETTLE_SECONDS=0.01,
        SCROLL_REENTRY_SECONDS=0.03,
        CHAT_POLL_INTERVAL_SECONDS=0.05,
        POLL_JITTER_SECONDS=0.0,
    )


@pytest.fixture
def patient_token():
    return make_token(PATIENT_ID, "patient")


@pytest.fixture
def token_store(settings, patient_token):
    return TokenStore(token=patient_token, settings=settings)


@pytest.fixture
def fake_socket():
    return FakeSocket()


@pytest.fixture
def recorded_sleeps():
    """An async sleep replacement that only records the requested delays."""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


class ChatBackend:
    """httpx.MockTransport handler with canned chat responses."""

    def __init__(self):
        self.requests = []
        self.history = []
        self.send_status = 200
        self.send_response = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            body = json.loads(request.content)
            if self.send_response is not None:
                return json_response(self.send_response, self.send_status)
            return json_response({
                "success": True,
                "data": {
                    "_id": f"srv-{len(self.requests)}",
                    "message": body["message"],
                    "senderId": PATIENT_ID,
                    "medicalRequestId": body.get("medicalRequestId"),
                    "clientMessageId": body.get("clientMessageId"),
                },
            }, self.send_status)
        return json_response({"success": True, "messages": self.history})

    def posts(self):
        return [r for r in self.requests if r.method == "POST"]
