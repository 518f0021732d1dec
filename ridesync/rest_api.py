"""
HTTP client for the dispatch backend.

`RestAPI` is the slow, authoritative channel: it backs the push feed when the
socket goes quiet and answers the few look-ups the realtime protocol has no
event for.  Every method blocks, so callers run it through
``Scheduler.submit``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests

from .core.constants import REQUEST_TIMEOUT
from .core.utils import scrub_sensitive
from .models import ACTIVE_STATUSES, RideStatus

logger = logging.getLogger(__name__)

_API_PREFIX = "/api/v1"


class RestAPIError(RuntimeError):
    """Raised when the backend reports an error or the request fails."""


@dataclass
class MemoryCredentialStore:
    """Keeps the authenticated identity for the lifetime of the process."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.user_id = None
        self.role = None


class RestAPI:
    def __init__(
        self,
        base_url: str,
        *,
        credential_store: MemoryCredentialStore,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._credentials = credential_store
        self._session = session or requests.Session()

    # Public API -----------------------------------------------------------------
    def fetch_open_offers(self, status: str = RideStatus.SEARCHING.value) -> List[Dict[str, Any]]:
        data = self._request("GET", "/ride/searching", params={"status": status})
        return _list_field(data, "rides")

    def fetch_my_rides(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status} if status else None
        data = self._request("GET", "/ride/rides", params=params)
        return _list_field(data, "rides")

    def fetch_active_rides(self) -> List[Dict[str, Any]]:
        active = {status.value for status in ACTIVE_STATUSES}
        return [
            ride
            for ride in self.fetch_my_rides()
            if isinstance(ride, dict) and ride.get("status") in active
        ]

    def fetch_conversations(self) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        data = self._request("GET", "/chat/chats")
        role = data.get("userRole") if isinstance(data, dict) else None
        return _list_field(data, "chats"), role

    def refresh_tokens(self) -> str:
        refresh_token = self._credentials.refresh_token
        if not refresh_token:
            raise RestAPIError("No refresh token available.")
        data = self._request(
            "POST",
            "/auth/refresh-token",
            json={"refresh_token": refresh_token},
            authenticated=False,
        )
        if not isinstance(data, dict) or not data.get("access_token"):
            raise RestAPIError("Backend did not return a new access token.")
        self._credentials.access_token = str(data["access_token"])
        if data.get("refresh_token"):
            self._credentials.refresh_token = str(data["refresh_token"])
        return self._credentials.access_token

    # Internal helpers -------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        url = f"{self.base_url}{_API_PREFIX}{path}"
        headers: Dict[str, str] = {}
        if authenticated:
            token = self._credentials.access_token
            if not token:
                raise RestAPIError("Not authenticated.")
            headers["Authorization"] = f"Bearer {token}"
        self._log_request(method, path, params or json)
        try:
            response = self._session.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.error("HTTP error while calling %s %s: %s", method, url, exc)
            raise RestAPIError(f"Unable to reach backend at {self.base_url}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RestAPIError(f"Backend returned invalid JSON for {path}.") from exc
        self._log_response(method, path, response.status_code, payload)

        if not 200 <= response.status_code < 300:
            message = payload.get("message") if isinstance(payload, dict) else ""
            raise RestAPIError(message or f"Backend HTTP {response.status_code} for {path}")
        return payload

    def _log_request(self, method: str, path: str, payload: Any) -> None:
        logger.info(
            "[Client->Server] %s %s payload=%s", method, path, scrub_sensitive(payload or {})
        )

    def _log_response(self, method: str, path: str, status: int, payload: Any) -> None:
        logger.debug(
            "[Client<-Server] %s %s status=%s payload=%s",
            method,
            path,
            status,
            scrub_sensitive(payload),
        )


def _list_field(data: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    value = data.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
