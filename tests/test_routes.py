"""
Tests for the balance and transaction routes and the error handlers.

The service graph is replaced through dependency_overrides so no database
or authority is touched.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from creditgate.api.dependencies import get_services
from creditgate.api.errors import STATUS_BY_CODE, build_error_response
from creditgate.exceptions import (
    AuthRequiredError,
    ConcurrencyExhaustedError,
    InsufficientBalanceError,
    RemoteUnavailableError,
)
from creditgate.main import app
from creditgate.models.api import AccountingMode, ErrorCode, TokenType
from creditgate.models.domain import BalanceCacheEntry, LocalBalanceData, TransactionRecord

HEADERS = {"X-User-Id": "user-1"}


@pytest.fixture
def services() -> MagicMock:
    """Service graph stand-in in remote mode."""
    services = MagicMock()
    services.mode = AccountingMode.REMOTE
    services.gateway.get_balance = AsyncMock(return_value=Decimal("100"))
    services.cache.snapshot = MagicMock(return_value=None)
    services.ledger.get_balance = AsyncMock(return_value=None)
    services.transactions.list_for_user = AsyncMock(return_value=[])
    return services


@pytest.fixture
def client(services: MagicMock):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


class TestBalanceRoute:
    """GET /v1/balance."""

    def test_requires_user_header(self, client):
        """No X-User-Id is 401."""
        response = client.get("/v1/balance")
        assert response.status_code == 401

    def test_remote_balance_minus_pending(self, client, services):
        """Remote balance is reduced by in-flight reservations."""
        services.cache.snapshot.return_value = BalanceCacheEntry(
            user_id="user-1",
            remote_credits=Decimal("100"),
            observed_at=0.0,
            fetched_at=0.0,
            pending_reserved=Decimal("30"),
        )

        response = client.get("/v1/balance", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert Decimal(str(body["credits"])) == Decimal("70")
        assert Decimal(str(body["remote_credits"])) == Decimal("100")
        assert Decimal(str(body["pending_reserved"])) == Decimal("30")
        assert body["mode"] == "remote"

    def test_local_balance(self, client, services):
        """Local mode reads the ledger."""
        services.mode = AccountingMode.LOCAL
        services.ledger.get_balance.return_value = LocalBalanceData("user-1", Decimal("42"))

        response = client.get("/v1/balance", headers=HEADERS)

        assert response.status_code == 200
        assert Decimal(str(response.json()["credits"])) == Decimal("42")
        services.gateway.get_balance.assert_not_called()

    def test_auth_required(self, client, services):
        """AuthRequired is 401 with a re-authentication redirect."""
        services.gateway.get_balance.side_effect = AuthRequiredError("user-1", "no access credential")

        response = client.get("/v1/balance", headers=HEADERS)

        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "AUTH_REQUIRED"
        assert body["redirect_url"] == "/oauth/ares"
        assert "no access credential" not in body["message"]

    def test_authority_unavailable(self, client, services):
        """RemoteUnavailable is 503 with a generic message."""
        services.gateway.get_balance.side_effect = RemoteUnavailableError("GET /user timed out")

        response = client.get("/v1/balance", headers=HEADERS)

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "SERVICE_UNAVAILABLE"
        assert "timed out" not in body["message"]


class TestTransactionsRoute:
    """GET /v1/transactions."""

    def test_lists_transactions(self, client, services):
        """Records are returned newest first as given by the log."""
        record = TransactionRecord(
            transaction_id=uuid4(),
            user_id="user-1",
            token_type=TokenType.PROMPT,
            raw_amount=Decimal("-1000"),
            rate=Decimal("2.5"),
            token_value=Decimal("-1.25"),
            model="gpt-4o",
            context="message",
            conversation_id="conv-1",
            created_at=datetime(2026, 3, 1, tzinfo=UTC),
        )
        services.transactions.list_for_user.return_value = [record]

        response = client.get("/v1/transactions?limit=10", headers=HEADERS)

        assert response.status_code == 200
        items = response.json()["transactions"]
        assert len(items) == 1
        assert items[0]["transaction_id"] == str(record.transaction_id)
        assert items[0]["token_type"] == "prompt"
        services.transactions.list_for_user.assert_awaited_once_with("user-1", limit=10)

    def test_limit_bounds(self, client):
        """Limit outside 1..500 is rejected."""
        assert client.get("/v1/transactions?limit=0", headers=HEADERS).status_code == 422
        assert client.get("/v1/transactions?limit=501", headers=HEADERS).status_code == 422


class TestErrorResponses:
    """Error body construction."""

    def test_status_mapping(self):
        """Each error code has an HTTP status."""
        assert STATUS_BY_CODE[ErrorCode.AUTH_REQUIRED] == 401
        assert STATUS_BY_CODE[ErrorCode.INSUFFICIENT_BALANCE] == 402
        assert STATUS_BY_CODE[ErrorCode.SERVICE_UNAVAILABLE] == 503
        assert STATUS_BY_CODE[ErrorCode.CONCURRENCY_EXHAUSTED] == 409

    def test_insufficient_body(self):
        """Insufficient balance carries balance and required."""
        body = build_error_response(InsufficientBalanceError(Decimal("70"), Decimal("80")))
        assert body.error == ErrorCode.INSUFFICIENT_BALANCE
        assert body.balance == Decimal("70")
        assert body.required == Decimal("80")
        assert body.redirect_url is None

    def test_concurrency_body_is_generic(self):
        """Concurrency exhaustion does not leak detail."""
        body = build_error_response(ConcurrencyExhaustedError("user-1", 10))
        assert body.error == ErrorCode.CONCURRENCY_EXHAUSTED
        assert "10 attempts" not in body.message
