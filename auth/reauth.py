"""
auth/reauth.py -- Client/gateway side recovery from an expired access token.

ReauthCoordinator sends requests with the held access token. When a call
comes back 401 it performs exactly ONE refresh exchange against the refresh
endpoint, then:

  - refresh succeeded -> store the new access token (and the rotated refresh
    token, if the server returned one) and replay the original call once.
    Whatever the replay returns is final, even another 401.
  - refresh rejected (401, 403, 423, or a 200 without an access token) ->
    drop every held credential and raise ReloginRequired.
  - anything else (unreachable, 429, 5xx) -> raise RefreshUnavailable and
    keep the credentials; a transient outage is not a revoked session.

The single bounded retry means an invalid or revoked refresh credential can
never cause a refresh loop.

Several threads may share one coordinator. A lock serializes refreshes; a
thread whose 401 was caused by a token that another thread has already
replaced skips its own refresh and just replays with the new token.

The transport is any object with a requests-style
request(method, url, headers=..., json=...) method; requests.Session is the
default.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests

logger = logging.getLogger("tokengate.auth.reauth")

# Refresh endpoint answers that mean the credential itself was refused.
_REJECTED_STATUSES = frozenset({401, 403, 423})


class ReloginRequired(Exception):
    """The refresh credential was rejected; the user has to log in again."""


class RefreshUnavailable(Exception):
    """The refresh endpoint could not be reached. Retryable; credentials are kept."""


class ReauthCoordinator:
    """Authenticated HTTP calls with one refresh-and-replay on 401.

    Usage:
        client = ReauthCoordinator(
            "https://api.example.com/api/v1/auth/refresh",
            access_token=pair["access_token"],
            refresh_token=pair["refresh_token"],
        )
        resp = client.request("GET", "https://api.example.com/api/v1/auth/me")
    """

    def __init__(
        self,
        refresh_url: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
        *,
        session: Any = None,
        header_name: str = "Authorization",
        scheme: str = "Bearer",
        timeout: float | None = None,
    ) -> None:
        self.refresh_url = refresh_url
        self.session = session if session is not None else requests.Session()
        self.header_name = header_name
        self.scheme = scheme
        self.timeout = timeout
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._lock = threading.Lock()

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    @property
    def has_credentials(self) -> bool:
        return self._access_token is not None or self._refresh_token is not None

    def set_credentials(self, access_token: str | None, refresh_token: str | None) -> None:
        with self._lock:
            self._access_token = access_token
            self._refresh_token = refresh_token

    def clear(self) -> None:
        with self._lock:
            self._access_token = None
            self._refresh_token = None

    def _send(self, method: str, url: str, token: str | None, **kwargs: Any):
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers[self.header_name] = f"{self.scheme} {token}"
        if self.timeout is not None:
            kwargs.setdefault("timeout", self.timeout)
        return self.session.request(method, url, headers=headers, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any):
        """Send an authenticated request, refreshing and replaying at most once."""
        used_token = self._access_token
        response = self._send(method, url, used_token, **dict(kwargs))
        if response.status_code != 401:
            return response

        logger.info("Got 401 from %s %s; attempting one refresh", method, url)
        new_token = self._refresh_after(used_token)
        return self._send(method, url, new_token, **dict(kwargs))

    def _refresh_after(self, failed_token: str | None) -> str:
        with self._lock:
            if self._access_token is not None and self._access_token != failed_token:
                # Another caller already refreshed while we were waiting.
                return self._access_token
            if not self._refresh_token:
                self._access_token = None
                raise ReloginRequired("no refresh credential held")

            body = {"refresh_token": self._refresh_token}
            try:
                if self.timeout is not None:
                    resp = self.session.request("POST", self.refresh_url, json=body, timeout=self.timeout)
                else:
                    resp = self.session.request("POST", self.refresh_url, json=body)
            except requests.RequestException as exc:
                logger.warning("Refresh endpoint unreachable: %s", exc)
                raise RefreshUnavailable(str(exc)) from exc

            if resp.status_code != 200 and resp.status_code not in _REJECTED_STATUSES:
                logger.warning("Refresh endpoint returned %d; credentials kept", resp.status_code)
                raise RefreshUnavailable(f"refresh endpoint returned {resp.status_code}")
            data = _json_or_empty(resp) if resp.status_code == 200 else {}
            access = data.get("access_token")
            if not access:
                logger.info("Refresh rejected (status %d); credentials discarded", resp.status_code)
                self._access_token = None
                self._refresh_token = None
                raise ReloginRequired(f"refresh rejected with status {resp.status_code}")

            self._access_token = access
            if data.get("refresh_token"):
                self._refresh_token = data["refresh_token"]
            return access


def _json_or_empty(resp) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
