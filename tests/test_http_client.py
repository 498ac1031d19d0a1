from unittest.mock import MagicMock

import pytest
import requests

from autosign_core import api
from autosign_core.errors import AuthExpired, ConfigurationError, TransientFetchFailure
from autosign_core.http_client import CookieClient, PasswordClient, PlatformClient, classify_response

from conftest import FakeResponse


def _session(response=None, error=None):
    session = MagicMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response or FakeResponse(200, {"rollcalls": []})
    return session


@pytest.mark.parametrize("status", [401, 403])
def test_auth_statuses_raise(status):
    with pytest.raises(AuthExpired):
        classify_response(FakeResponse(status))


def test_redirect_to_identity_provider_raises():
    resp = FakeResponse(302, headers={"location": "https://identity.zju.edu.cn/cas/login?service=x"})
    with pytest.raises(AuthExpired):
        classify_response(resp)


def test_other_responses_pass_through():
    ok = FakeResponse(200, {})
    assert classify_response(ok) is ok
    elsewhere = FakeResponse(302, headers={"location": "https://courses.zju.edu.cn/user/index"})
    assert classify_response(elsewhere) is elsewhere
    assert classify_response(FakeResponse(500)).status_code == 500


def test_network_error_becomes_transient():
    client = PlatformClient(session=_session(error=requests.ConnectionError("reset")))
    with pytest.raises(TransientFetchFailure):
        client.request("GET", "https://example.invalid")


def test_cookie_client_sends_cookie_and_cannot_refresh():
    session = _session()
    client = CookieClient("session=abc", session=session)
    client.request("GET", "https://example.invalid")

    headers = session.request.call_args.kwargs["headers"]
    assert headers["Cookie"] == "session=abc"
    assert "User-Agent" in headers
    assert session.request.call_args.kwargs["allow_redirects"] is False
    assert client.can_refresh is False
    assert client.refresh() is False


def test_cookie_client_requires_cookie():
    with pytest.raises(ConfigurationError):
        CookieClient("")


def test_password_client_logs_in_once_and_refreshes():
    authenticator = MagicMock()
    session = _session()
    client = PasswordClient("3200000001", "pw", authenticator, session=session)

    client.request("GET", "https://example.invalid")
    client.request("GET", "https://example.invalid")
    assert authenticator.call_count == 1
    authenticator.assert_called_with(session, "3200000001", "pw")

    assert client.refresh() is True
    assert authenticator.call_count == 2
    assert client.session is not session
    client.close()


def test_password_client_refresh_failure():
    authenticator = MagicMock(side_effect=[None, AuthExpired("bad password")])
    client = PasswordClient("3200000001", "pw", authenticator, session=_session())
    client.request("GET", "https://example.invalid")
    assert client.refresh() is False
    client.close()


def test_password_client_needs_authenticator():
    with pytest.raises(ConfigurationError):
        PasswordClient("3200000001", "pw", None)
    with pytest.raises(ConfigurationError):
        PasswordClient("3200000001", "", MagicMock())


# ─── Platform API ────────────────────────────────────────────────

class _Client:
    def __init__(self, response):
        self.response = response
        self.sent = []

    def request(self, method, url, **kwargs):
        self.sent.append((method, url, kwargs))
        return self.response


def test_fetch_rollcalls_parses_kinds():
    client = _Client(FakeResponse(200, {"rollcalls": [
        {"rollcall_id": 1, "is_radar": True, "title": "Lecture", "status": "absent"},
        {"rollcall_id": 2, "is_number": True, "status_name": "on_call_fine"},
    ]}))
    radar, number = api.fetch_rollcalls(client)
    assert (radar.kind, number.kind) == (api.RADAR, api.NUMERIC)
    assert not radar.is_on_call
    assert number.is_on_call
    assert "#1: Lecture" in radar.describe()


@pytest.mark.parametrize("response", [FakeResponse(500), FakeResponse(200, None, text="<html>")])
def test_fetch_rollcalls_failures_are_transient(response):
    with pytest.raises(TransientFetchFailure):
        api.fetch_rollcalls(_Client(response))


def test_answer_number_result():
    assert api.answer_number(_Client(FakeResponse(200, {})), 1, "0001")
    assert not api.answer_number(_Client(FakeResponse(200, {"error_code": "wrong_number_code"})), 1, "0001")
    assert not api.answer_number(_Client(FakeResponse(400, {})), 1, "0001")


def test_answer_radar_body_and_distance():
    client = _Client(FakeResponse(200, {"status_name": "failed", "distance": "123.5"}))
    outcome = api.answer_radar(client, 42, 120.1, 30.2)
    method, url, kwargs = client.sent[0]
    assert method == "PUT"
    assert "/api/rollcall/42/answer" in url
    assert kwargs["json"]["longitude"] == 120.1
    assert kwargs["json"]["latitude"] == 30.2
    assert api.extract_distance(outcome) == 123.5
    assert api.extract_distance({"data": {"distance": 0}}) is None
    assert api.answer_radar(_Client(FakeResponse(200, None)), 42, 0, 0) == {}
