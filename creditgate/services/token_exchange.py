"""
Token exchange client for the upstream OAuth provider.

Only the refresh grant lives here; the authorization-code exchange that
first produces tokens happens elsewhere.
"""

import httpx
from structlog import get_logger

from creditgate.exceptions import TokenExchangeError
from creditgate.models.domain import TokenGrant
from creditgate.observability.tracing import trace_operation

logger = get_logger(__name__)


class TokenExchangeClient:
    """Refresh-grant client for a standard OAuth token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def refresh(self, refresh_secret: str) -> TokenGrant:
        """
        Exchange a refresh secret for a new access token.

        Raises:
            TokenExchangeError: transport failure, non-2xx, or malformed body.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_secret,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        with trace_operation("token_exchange", token_url=self.token_url):
            try:
                response = await self.http_client.post(
                    self.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                token_data = response.json()
            except httpx.HTTPStatusError as e:
                logger.error(
                    "token_exchange_failed",
                    status=e.response.status_code,
                    text=e.response.text[:500],
                )
                raise TokenExchangeError(
                    f"token endpoint returned {e.response.status_code}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.HTTPError as e:
                logger.error("token_exchange_transport_error", error=str(e))
                raise TokenExchangeError(f"token endpoint unreachable: {e}") from e
            except ValueError as e:
                logger.error("token_exchange_invalid_json", error=str(e))
                raise TokenExchangeError("token endpoint returned invalid JSON") from e

        return self._parse_grant(token_data)

    @staticmethod
    def _parse_grant(token_data: object) -> TokenGrant:
        """Build a TokenGrant from the endpoint payload."""
        if not isinstance(token_data, dict):
            raise TokenExchangeError("token response is not an object")

        access_token = token_data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenExchangeError("token response has no access_token")

        try:
            expires_in = int(token_data.get("expires_in", 3600))
            refresh_expires_raw = token_data.get("refresh_expires_in")
            refresh_expires_in = (
                int(refresh_expires_raw) if refresh_expires_raw is not None else None
            )
            return TokenGrant(
                access_token=access_token,
                expires_in=expires_in,
                refresh_token=token_data.get("refresh_token") or None,
                refresh_expires_in=refresh_expires_in,
                token_type=token_data.get("token_type", "Bearer"),
            )
        except (TypeError, ValueError) as e:
            raise TokenExchangeError(f"token response malformed: {e}") from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
