"""Thin httpx wrapper for the remote work-coordination API."""

from __future__ import annotations

from typing import Any

import httpx

from . import __version__
from .errors import AuthenticationError, RemoteApiError


def error_detail(response: httpx.Response) -> str:
    """Return a short human-readable error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text[:500] or response.reason_phrase


def raise_for_status(response: httpx.Response, *, context: str) -> None:
    """Map an error response onto the worker's error taxonomy.

    401/403 are authentication failures; other error statuses become
    ``RemoteApiError``, which is transient only for 5xx.
    """
    status = response.status_code
    if status < 400:
        return
    detail = error_detail(response)
    if status in (401, 403):
        raise AuthenticationError(
            f"{context}: authentication failed ({status}): {detail}",
            recovery_hint="re-authenticate the worker and restart it",
        )
    raise RemoteApiError(status, f"{context}: {detail}")


class ApiClient:
    """Authenticated JSON client bound to one API base URL."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        return {
            "x-authorization": f"Bearer {self._token}",
            "Accept": "application/json",
            "User-Agent": f"steward-worker/{__version__}",
        }

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        return self._client.request(method, url, headers=headers, **kwargs)

    def get(self, path: str, **params: Any) -> httpx.Response:
        return self.request("GET", path, params=params or None)

    def post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        return self.request("POST", path, json=payload)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
