"""
Authority Client - authenticated calls to the metering authority.

Attaches the user's bearer credential and handles the one case where a
credential we believed valid is rejected: the coordinator is told to
distrust it and the whole get-credential -> call sequence runs exactly once
more. A second 401 is terminal.
"""

from typing import Any

import httpx
from structlog import get_logger

from creditgate.exceptions import (
    AuthRequiredError,
    RemoteRequestError,
    RemoteUnavailableError,
)
from creditgate.observability.metrics import metrics
from creditgate.observability.tracing import trace_operation
from creditgate.services.refresh_coordinator import RefreshCoordinator

logger = get_logger(__name__)


class AuthorityClient:
    """HTTP client for the metering authority's per-user API."""

    def __init__(
        self,
        base_url: str,
        coordinator: RefreshCoordinator,
        http_client: httpx.AsyncClient | None = None,
        client_name: str = "ChatEBT",
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_name = client_name
        self.timeout = timeout
        self._coordinator = coordinator
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def request(
        self,
        user_id: str,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Call the authority on behalf of a user.

        Raises:
            AuthRequiredError: no credential, refresh failed, or rejected twice.
            RemoteUnavailableError: timeout, transport failure, or 5xx.
            RemoteRequestError: any other non-2xx.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        operation = path.strip("/").replace("/", "_") or "root"

        for attempt in range(2):
            token = await self._coordinator.get_valid_credential(user_id)
            response = await self._send(method, url, token, json, timeout, operation)

            if response.status_code != 401:
                return self._decode(response, operation)

            if attempt == 0:
                logger.warning(
                    "authority_rejected_credential",
                    user_id=user_id,
                    path=path,
                    action="retrying_once",
                )
                self._coordinator.invalidate(user_id)

        logger.error("authority_rejected_credential_twice", user_id=user_id, path=path)
        await self._coordinator.revoke(user_id, "rejected_after_refresh")
        raise AuthRequiredError(user_id, "metering authority rejected refreshed credential")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        json: dict[str, Any] | None,
        timeout: float | None,
        operation: str,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        with trace_operation("authority_request", method=method, url=url):
            try:
                return await self.http_client.request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except httpx.TimeoutException as e:
                metrics.record_remote_error(operation, "timeout")
                logger.warning("authority_timeout", url=url, error=str(e))
                raise RemoteUnavailableError(f"{method} {url} timed out") from e
            except httpx.HTTPError as e:
                metrics.record_remote_error(operation, "transport")
                logger.warning("authority_transport_error", url=url, error=str(e))
                raise RemoteUnavailableError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _decode(response: httpx.Response, operation: str) -> dict[str, Any]:
        if response.status_code >= 500:
            metrics.record_remote_error(operation, f"http_{response.status_code}")
            logger.warning(
                "authority_server_error",
                status=response.status_code,
                text=response.text[:500],
            )
            raise RemoteUnavailableError(f"authority returned {response.status_code}")

        if response.status_code >= 400:
            metrics.record_remote_error(operation, f"http_{response.status_code}")
            logger.warning(
                "authority_request_rejected",
                status=response.status_code,
                text=response.text[:500],
            )
            raise RemoteRequestError(response.status_code, response.text[:200])

        if not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            metrics.record_remote_error(operation, "invalid_json")
            raise RemoteUnavailableError("authority returned invalid JSON") from e

        if not isinstance(body, dict):
            raise RemoteUnavailableError("authority returned a non-object body")
        return body
