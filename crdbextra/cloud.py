"""Thin async client for the Cockroach Cloud REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import CrdbExtraError
from .models import ConnectionParams

LOG = logging.getLogger(__name__)

DEFAULT_HOST = "https://cockroachlabs.cloud"

# Numeric codes carried in the structured error body.
CODE_NOT_FOUND = 5
CODE_NOT_READY = 9


class CloudApiError(CrdbExtraError):
    """Raised for non-success responses that are not a known cluster state."""

    def __init__(self, status: int, message: str, code: int | None = None) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"received non-200 status code: {status}, body: {message}")


class ClusterStateError(CrdbExtraError):
    """Cluster is in a state where its objects should be treated as absent."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class ClusterNotFoundError(ClusterStateError):
    """Cloud API reported the cluster does not exist."""

    def __init__(self, message: str = "cluster not found", status: int | None = None) -> None:
        super().__init__(message, status)


class ClusterNotReadyError(ClusterStateError):
    """Cloud API reported the cluster is not ready to accept requests."""

    def __init__(self, message: str = "cluster not ready", status: int | None = None) -> None:
        super().__init__(message, status)


class CockroachCloudClient:
    """Wraps the three cloud endpoints the credential broker depends on."""

    def __init__(
        self,
        api_key: str,
        *,
        host: str = DEFAULT_HOST,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._host = host.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def host(self) -> str:
        return self._host

    async def create_sql_user(self, cluster_id: str, username: str, password: str) -> None:
        """Create a SQL user on the cluster."""

        path = f"/api/v1/clusters/{cluster_id}/sql-users"
        LOG.debug("Making POST request to: %s", self._host + path)
        await self._request("POST", path, json={"name": username, "password": password})

    async def delete_sql_user(self, cluster_id: str, username: str, *, missing_ok: bool = False) -> None:
        """Delete a SQL user; with ``missing_ok`` a 404 for the user is not an error."""

        path = f"/api/v1/clusters/{cluster_id}/sql-users/{username}"
        LOG.debug("Making DELETE request to: %s", self._host + path)
        try:
            await self._request("DELETE", path)
        except (ClusterNotFoundError, CloudApiError) as exc:
            if missing_ok and _is_http_not_found(exc):
                LOG.debug("SQL user %s did not exist on cluster %s", username, cluster_id)
                return
            raise

    async def connection_params(self, cluster_id: str, sql_user: str) -> ConnectionParams:
        """Fetch the connection string for ``sql_user`` on the cluster."""

        path = f"/api/v1/clusters/{cluster_id}/connection-string"
        payload = await self._request("GET", path, params={"sql_user": sql_user})
        if not isinstance(payload, dict) or "connection_string" not in payload:
            raise CloudApiError(200, f"unexpected connection-string response: {payload!r}")
        params = payload.get("params") or {}
        port = params.get("Port")
        LOG.debug("Connection string response for cluster %s received", cluster_id)
        return ConnectionParams(
            connection_string=str(payload["connection_string"]),
            host=params.get("Host") or None,
            port=int(port) if port not in (None, "") else None,
            database=params.get("Database") or None,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client when this instance created it."""

        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"
        response = await self._client.request(method, self._host + path, headers=headers, **kwargs)
        return _process_response(response)


def _process_response(response: httpx.Response) -> Any:
    if response.status_code == 200:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None
    try:
        body = response.json()
    except ValueError:
        raise CloudApiError(response.status_code, response.text) from None
    code = body.get("code") if isinstance(body, dict) else None
    message = body.get("message", "") if isinstance(body, dict) else str(body)
    if code == CODE_NOT_READY:
        raise ClusterNotReadyError(status=response.status_code)
    if code == CODE_NOT_FOUND:
        raise ClusterNotFoundError(status=response.status_code)
    raise CloudApiError(response.status_code, message or str(body), code=code if isinstance(code, int) else None)


def _is_http_not_found(exc: Exception) -> bool:
    return getattr(exc, "status", None) == 404


__all__ = [
    "CloudApiError",
    "ClusterNotFoundError",
    "ClusterNotReadyError",
    "ClusterStateError",
    "CockroachCloudClient",
]
