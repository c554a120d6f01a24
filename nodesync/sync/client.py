"""HTTP client a follower uses to talk to its leader.

Two calls, two headers:

- ``GET /api/node-sync/export`` with ``X-Slave-API-Key`` -- pull the snapshot
- ``GET /api/slave/health`` with ``X-API-Key`` -- liveness round-trip

Network failures and timeouts become ``TransientNetworkError``; 401/403 keep
their meaning as ``AuthError`` / ``SyncDisabledError``. Nothing here retries;
the scheduler in ``nodesync.sync.puller`` owns retry and backoff.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from nodesync.errors import AuthError, SyncDisabledError, TransientNetworkError
from nodesync.logging_setup import key_prefix

logger = logging.getLogger(__name__)

EXPORT_PATH = "/api/node-sync/export"
HEALTH_PATH = "/api/slave/health"

SLAVE_KEY_HEADER = "X-Slave-API-Key"
NODE_KEY_HEADER = "X-API-Key"


class LeaderClient:
    """Blocking client for one leader endpoint."""

    def __init__(
        self,
        host: str,
        port: int,
        api_key: str,
        timeout: float = 10.0,
        sync_timeout: float = 30.0,
        scheme: str = "http",
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.api_key = api_key
        self.timeout = timeout
        self.sync_timeout = sync_timeout
        self.base_url = f"{scheme}://{host}:{port}"
        self._http = http_client

    def __repr__(self) -> str:
        return f"LeaderClient({self.base_url}, key={key_prefix(self.api_key)})"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, path: str, headers: dict[str, str], timeout: float) -> Any:
        try:
            if self._http is not None:
                response = self._http.get(path, headers=headers, timeout=timeout)
            else:
                with httpx.Client(base_url=self.base_url, timeout=timeout) as client:
                    response = client.get(path, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError("Timed out contacting leader", details=self.base_url) from exc
        except httpx.HTTPError as exc:
            raise TransientNetworkError("Leader unreachable", details=f"{self.base_url}: {exc}") from exc

        message = _error_message(response)
        if response.status_code == 401:
            raise AuthError(message or "Leader rejected the API key")
        if response.status_code == 403:
            raise SyncDisabledError(message or "Node sync is disabled on the leader")
        if response.is_error:
            raise TransientNetworkError(
                f"Leader answered HTTP {response.status_code}", details=message or None
            )

        try:
            return response.json()
        except ValueError as exc:
            raise TransientNetworkError("Leader sent a malformed response", details=path) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_export(self) -> tuple[str, dict]:
        """Pull ``(hash, config)`` from the leader."""
        body = self._get(EXPORT_PATH, {SLAVE_KEY_HEADER: self.api_key}, self.sync_timeout)
        if (
            not isinstance(body, dict)
            or not isinstance(body.get("hash"), str)
            or not isinstance(body.get("config"), dict)
        ):
            raise TransientNetworkError("Invalid response structure from leader")
        logger.debug("Fetched export from %s (hash %s)", self.base_url, body["hash"][:12])
        return body["hash"], body["config"]

    def health(self) -> dict:
        """One authenticated round-trip to the leader's health endpoint."""
        body = self._get(HEALTH_PATH, {NODE_KEY_HEADER: self.api_key}, self.timeout)
        if not isinstance(body, dict):
            raise TransientNetworkError("Invalid health response from leader")
        return body


def _error_message(response: httpx.Response) -> str:
    if not response.is_error:
        return ""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or "")
    return ""
