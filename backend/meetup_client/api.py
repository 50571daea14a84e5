"""HTTP client for the meetup REST API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DIRECTIONS_TIMEOUT = 30


class ApiError(Exception):
    """Non-2xx response from the API."""

    def __init__(self, status_code: int, payload: Any):
        super().__init__(f"API request failed with {status_code}: {payload}")
        self.status_code = status_code
        self.payload = payload


class MeetupApiClient:
    """
    Thin wrapper over the REST endpoints.

    Args:
        base_url: Server root, e.g. http://127.0.0.1:8000
        token: JWT access token; set by login()/register() when omitted
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_root = f"{self.base_url}/api"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None
        if token:
            self.set_token(token)

    def set_token(self, token: str) -> None:
        self.token = token
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _request(self, method: str, path: str, **kwargs) -> Any:
        kwargs.setdefault("timeout", self.timeout)
        resp = self.session.request(method, f"{self.api_root}{path}", **kwargs)
        if not resp.ok:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            raise ApiError(resp.status_code, payload)
        return resp.json() if resp.content else None

    # ---------------------- Auth ----------------------

    def _store_session(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self.set_token(data["tokens"]["access"])
        self.user = data["user"]
        return data["user"]

    def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/auth/register/", json={
            "username": username,
            "email": email,
            "password": password,
        })
        return self._store_session(data)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/auth/login/", json={"email": email, "password": password})
        return self._store_session(data)

    # ---------------------- Events ----------------------

    def list_events(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/events/")

    def create_event(self, **fields) -> Dict[str, Any]:
        return self._request("POST", "/events/", json=fields)

    def get_event(self, event_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/events/{event_id}/")

    def delete_event(self, event_id: str) -> None:
        self._request("DELETE", f"/events/{event_id}/")

    def join_event(self, event_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/events/{event_id}/join/")

    def leave_event(self, event_id: str) -> None:
        self._request("POST", f"/events/{event_id}/leave/")

    def get_participants(self, event_id: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/events/{event_id}/participants/")

    # ---------------------- Directions ----------------------

    def get_directions(self, origin: str, destination: str, mode: str = "driving") -> Optional[Dict[str, Any]]:
        """Route estimate as {duration, distance, durationText, distanceText}, or None on any failure."""
        try:
            return self._request(
                "GET",
                "/directions/",
                params={"origin": origin, "destination": destination, "mode": mode},
                timeout=DIRECTIONS_TIMEOUT,
            )
        except (ApiError, requests.RequestException, ValueError) as e:
            logger.warning("Directions lookup failed: %s", e)
            return None
