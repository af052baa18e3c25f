"""
Remote Balance Gateway - the metering authority's balance and usage API.

The authority is the source of truth in remote accounting mode. It is slow
and rate-limited, so callers go through MeteredBalanceCache for admission
checks and only hit this gateway directly for usage reports.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from structlog import get_logger

from creditgate.exceptions import RemoteUnavailableError
from creditgate.models.domain import ZERO, UsageAck
from creditgate.services.authority_client import AuthorityClient

logger = get_logger(__name__)


def _to_credits(value: Any) -> Decimal:
    """Parse a credit amount from a JSON value (missing -> 0)."""
    if value is None:
        return ZERO
    try:
        # str() keeps float JSON values from dragging binary noise into Decimal
        return Decimal(str(value))
    except InvalidOperation as e:
        raise RemoteUnavailableError(f"authority returned invalid credits: {value!r}") from e


class RemoteBalanceGateway:
    """Balance lookup and usage reporting against the metering authority."""

    BALANCE_PATH = "user"
    USAGE_PATH = "partner/usage"

    def __init__(self, client: AuthorityClient) -> None:
        self._client = client

    async def get_balance(self, user_id: str, timeout: float | None = None) -> Decimal:
        """Authoritative current balance in credits."""
        body = await self._client.request(user_id, "GET", self.BALANCE_PATH, timeout=timeout)
        user = body.get("user")
        credits = _to_credits(user.get("credits") if isinstance(user, dict) else None)
        logger.debug("remote_balance_fetched", user_id=user_id, credits=str(credits))
        return credits

    async def report_usage(self, user_id: str, credits: Decimal, description: str) -> UsageAck:
        """
        Debit already-reserved capacity at the authority.

        At-least-once: a retried report after an ambiguous failure may
        double-debit, which the authority tolerates for reserved capacity.
        """
        payload = {
            "client_id": self._client.client_name,
            "usage": description,
            "credits": float(credits),
        }
        body = await self._client.request(user_id, "POST", self.USAGE_PATH, json=payload)

        remaining: Decimal | None = None
        user = body.get("user")
        if isinstance(user, dict) and "credits" in user:
            remaining = _to_credits(user["credits"])
        elif "credits" in body:
            remaining = _to_credits(body["credits"])

        logger.info(
            "usage_reported",
            user_id=user_id,
            credits=str(credits),
            usage=description,
            remaining_credits=str(remaining) if remaining is not None else None,
        )
        return UsageAck(user_id=user_id, credits=credits, remaining_credits=remaining)
