import threading
from datetime import datetime

import pytest

from autosign_core.errors import AuthExpired


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


class FakeClient:
    """Platform client whose responses come from a handler(method, url, json)."""

    can_refresh = False

    def __init__(self, handler=None, can_refresh=False, refresh_ok=False):
        self.handler = handler or (lambda method, url, body: FakeResponse(200, {"rollcalls": []}))
        self.can_refresh = can_refresh
        self.refresh_ok = refresh_ok
        self.refresh_calls = 0
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs.get("json")))
        return self.handler(method, url, kwargs.get("json"))

    def refresh(self):
        self.refresh_calls += 1
        return self.refresh_ok

    def close(self):
        pass

    def answered_codes(self):
        with self._lock:
            return [body["numberCode"] for _, _, body in self.calls if body and "numberCode" in body]


def number_handler(accepted=None, auth_on=None):
    """Accept one code; raise AuthExpired on another."""

    def handler(method, url, body):
        code = (body or {}).get("numberCode")
        if auth_on is not None and code == auth_on:
            raise AuthExpired("HTTP 401")
        if code == accepted:
            return FakeResponse(200, {"status": "on_call"})
        return FakeResponse(400, {"error_code": "wrong_number_code"})

    return handler


class Clock:
    """Settable wall clock for scheduler and supervisor tests."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 4, 10, 0))
