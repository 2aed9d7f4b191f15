"""
tests/test_reauth.py -- Tests for ReauthCoordinator.

The unit tests drive the coordinator with a MagicMock transport so every
call it makes can be asserted. The integration tests point it at the real
app through TestClient, which exposes the same request() interface as
requests.Session.
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest
import requests

from auth.reauth import ReauthCoordinator, RefreshUnavailable, ReloginRequired
from auth.tokens import TokenCodec
from conftest import STAFF_EMAIL, STAFF_PASSWORD

REFRESH_URL = "https://api.example.com/api/v1/auth/refresh"
ME_URL = "https://api.example.com/api/v1/auth/me"


def _resp(status_code: int, body=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no body")
    else:
        resp.json.return_value = body
    return resp


def _coordinator(session: MagicMock, **kwargs) -> ReauthCoordinator:
    return ReauthCoordinator(REFRESH_URL, access_token="old-access", refresh_token="old-refresh", session=session, **kwargs)


class TestReauthUnit:
    def test_success_passes_through_without_refresh(self) -> None:
        session = MagicMock()
        session.request.return_value = _resp(200, {"ok": True})
        coordinator = _coordinator(session)

        assert coordinator.request("GET", ME_URL).status_code == 200
        session.request.assert_called_once_with("GET", ME_URL, headers={"Authorization": "Bearer old-access"})

    def test_refresh_and_replay_once(self) -> None:
        session = MagicMock()
        session.request.side_effect = [
            _resp(401),
            _resp(200, {"access_token": "new-access", "refresh_token": "new-refresh"}),
            _resp(200, {"ok": True}),
        ]
        coordinator = _coordinator(session)

        assert coordinator.request("GET", ME_URL, headers={"X-Trace": "1"}).status_code == 200
        refresh_call = session.request.call_args_list[1]
        assert refresh_call.args == ("POST", REFRESH_URL)
        assert refresh_call.kwargs["json"] == {"refresh_token": "old-refresh"}
        replay = session.request.call_args_list[2]
        assert replay.kwargs["headers"] == {"X-Trace": "1", "Authorization": "Bearer new-access"}
        assert coordinator.access_token == "new-access"
        assert coordinator.refresh_token == "new-refresh"

    def test_refresh_without_rotation_keeps_refresh_token(self) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), _resp(200, {"access_token": "new-access"}), _resp(200, {})]
        coordinator = _coordinator(session)
        coordinator.request("GET", ME_URL)
        assert coordinator.refresh_token == "old-refresh"

    def test_replay_result_is_final(self) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), _resp(200, {"access_token": "new-access"}), _resp(401)]
        coordinator = _coordinator(session)

        assert coordinator.request("GET", ME_URL).status_code == 401
        assert session.request.call_count == 3

    @pytest.mark.parametrize("refresh_status", [401, 403, 423])
    def test_rejected_refresh_requires_relogin(self, refresh_status: int) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), _resp(refresh_status, {"error": {"code": "token_revoked"}})]
        coordinator = _coordinator(session)

        with pytest.raises(ReloginRequired):
            coordinator.request("GET", ME_URL)
        assert coordinator.access_token is None
        assert coordinator.refresh_token is None
        assert not coordinator.has_credentials
        assert session.request.call_count == 2

    def test_refresh_body_without_access_token_requires_relogin(self) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), _resp(200, ["unexpected"])]
        with pytest.raises(ReloginRequired):
            _coordinator(session).request("GET", ME_URL)

    def test_no_refresh_token_held(self) -> None:
        session = MagicMock()
        session.request.return_value = _resp(401)
        coordinator = ReauthCoordinator(REFRESH_URL, access_token="a", session=session)
        with pytest.raises(ReloginRequired):
            coordinator.request("GET", ME_URL)
        assert session.request.call_count == 1

    def test_network_failure_keeps_credentials(self) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), requests.ConnectionError("refused")]
        coordinator = _coordinator(session)

        with pytest.raises(RefreshUnavailable):
            coordinator.request("GET", ME_URL)
        assert coordinator.access_token == "old-access"
        assert coordinator.refresh_token == "old-refresh"

    @pytest.mark.parametrize("refresh_status", [429, 500, 502, 503, 504])
    def test_transient_refresh_failure_keeps_credentials(self, refresh_status: int) -> None:
        session = MagicMock()
        session.request.side_effect = [_resp(401), _resp(refresh_status, {"error": {"code": "rate_limited"}})]
        coordinator = _coordinator(session)
        with pytest.raises(RefreshUnavailable):
            coordinator.request("GET", ME_URL)
        assert coordinator.access_token == "old-access"
        assert coordinator.refresh_token == "old-refresh"
        assert session.request.call_count == 2

    def test_retry_after_rate_limit_succeeds(self) -> None:
        session = MagicMock()
        session.request.side_effect = [
            _resp(401),
            _resp(429),
            _resp(401),
            _resp(200, {"access_token": "new-access"}),
            _resp(200, {"ok": True}),
        ]
        coordinator = _coordinator(session)
        with pytest.raises(RefreshUnavailable):
            coordinator.request("GET", ME_URL)
        assert coordinator.request("GET", ME_URL).status_code == 200
        assert coordinator.access_token == "new-access"

    def test_token_replaced_by_another_caller_skips_refresh(self) -> None:
        session = MagicMock()
        coordinator = _coordinator(session)
        assert coordinator._refresh_after("stale-access") == "old-access"
        session.request.assert_not_called()

    def test_timeout_and_custom_scheme(self) -> None:
        session = MagicMock()
        session.request.return_value = _resp(200, {})
        coordinator = _coordinator(session, header_name="X-Auth", scheme="Token", timeout=2.5)
        coordinator.request("GET", ME_URL)
        session.request.assert_called_once_with("GET", ME_URL, headers={"X-Auth": "Token old-access"}, timeout=2.5)

    def test_set_credentials_and_clear(self) -> None:
        coordinator = ReauthCoordinator(REFRESH_URL, session=MagicMock())
        assert not coordinator.has_credentials
        coordinator.set_credentials("a", "r")
        assert coordinator.has_credentials
        coordinator.clear()
        assert coordinator.access_token is None and coordinator.refresh_token is None


class TestReauthAgainstApp:
    def _login(self, client) -> dict:
        resp = client.post("/api/v1/auth/login", json={"email": STAFF_EMAIL, "password": STAFF_PASSWORD})
        assert resp.status_code == 200
        return resp.json()

    def _expired_access(self, client) -> str:
        app = client.app
        past = TokenCodec(app.state.auth_config, clock=lambda: time.time() - 7200)
        return past.encode({"sub": "1", "role": "service_staff", "typ": "access"}, 60)

    def test_expired_access_token_is_recovered(self, api_client) -> None:
        client = api_client.client
        tokens = self._login(client)
        coordinator = ReauthCoordinator(
            "/api/v1/auth/refresh",
            access_token=self._expired_access(client),
            refresh_token=tokens["refresh_token"],
            session=client,
        )

        resp = coordinator.request("GET", "/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["email"] == STAFF_EMAIL
        assert coordinator.refresh_token != tokens["refresh_token"]

    def test_revoked_session_requires_relogin(self, api_client) -> None:
        client = api_client.client
        tokens = self._login(client)
        client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        coordinator = ReauthCoordinator(
            "/api/v1/auth/refresh",
            access_token=self._expired_access(client),
            refresh_token=tokens["refresh_token"],
            session=client,
        )

        with pytest.raises(ReloginRequired):
            coordinator.request("GET", "/api/v1/auth/me")
        assert not coordinator.has_credentials
