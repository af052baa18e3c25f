"""
Tests for domain dataclasses.

Validation in __post_init__, derived properties and immutability.
"""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from creditgate.exceptions import InsufficientBalanceError
from creditgate.models.api import CredentialKind, IntervalUnit
from creditgate.models.domain import (
    BalanceCacheEntry,
    BalanceFieldUpdate,
    Credential,
    LocalBalanceData,
    MaintenanceReport,
    PromptTokenBreakdown,
    ReservationResult,
    TokenGrant,
    credential_identifier,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def make_credential(expires_at: datetime, kind: CredentialKind = CredentialKind.ACCESS):
    return Credential(
        user_id="user-1",
        provider="ares",
        kind=kind,
        ciphertext="gAAAA-ciphertext",
        expires_at=expires_at,
    )


class TestCredential:
    """Tests for Credential."""

    def test_identifiers(self):
        """Access uses the provider name; refresh appends :refresh."""
        assert credential_identifier("ares", CredentialKind.ACCESS) == "ares"
        assert credential_identifier("ares", CredentialKind.REFRESH) == "ares:refresh"
        assert make_credential(NOW, CredentialKind.REFRESH).identifier == "ares:refresh"

    def test_fresh_outside_skew(self):
        """Credential expiring after now + skew is fresh."""
        credential = make_credential(NOW + timedelta(minutes=10))
        assert credential.is_fresh(NOW, timedelta(minutes=5)) is True

    def test_not_fresh_inside_skew(self):
        """Credential expiring within the skew buffer is not fresh."""
        credential = make_credential(NOW + timedelta(minutes=4))
        assert credential.is_fresh(NOW, timedelta(minutes=5)) is False
        assert credential.is_expired(NOW) is False

    def test_expired(self):
        """Expiry at exactly now counts as expired."""
        assert make_credential(NOW).is_expired(NOW) is True

    def test_empty_ciphertext_rejected(self):
        """Ciphertext is required."""
        with pytest.raises(ValueError, match="ciphertext"):
            Credential(
                user_id="user-1",
                provider="ares",
                kind=CredentialKind.ACCESS,
                ciphertext="",
                expires_at=NOW,
            )

    def test_frozen(self):
        """Credentials are immutable."""
        credential = make_credential(NOW)
        with pytest.raises(FrozenInstanceError):
            credential.ciphertext = "other"  # type: ignore[misc]


class TestTokenGrant:
    """Tests for TokenGrant."""

    def test_valid(self):
        """Minimal grant."""
        grant = TokenGrant(access_token="abc", expires_in=3600)
        assert grant.refresh_token is None
        assert grant.token_type == "Bearer"

    def test_non_positive_expiry_rejected(self):
        """expires_in must be positive."""
        with pytest.raises(ValueError, match="expires_in"):
            TokenGrant(access_token="abc", expires_in=0)


class TestBalanceCacheEntry:
    """Tests for BalanceCacheEntry."""

    def test_available(self):
        """Available is remote minus pending."""
        entry = BalanceCacheEntry(
            user_id="u1",
            remote_credits=Decimal("100"),
            observed_at=0.0,
            fetched_at=0.0,
            pending_reserved=Decimal("30"),
        )
        assert entry.available_credits == Decimal("70")


class TestReservationResult:
    """Tests for ReservationResult."""

    def test_raise_for_insufficient(self):
        """Refused result raises InsufficientBalanceError on demand."""
        result = ReservationResult(
            allowed=False, user_id="u1", required=Decimal("80"), available=Decimal("70")
        )
        with pytest.raises(InsufficientBalanceError) as exc_info:
            result.raise_for_insufficient()
        assert exc_info.value.balance == Decimal("70")

    def test_allowed_does_not_raise(self):
        """Allowed result is a no-op."""
        ReservationResult(
            allowed=True, user_id="u1", required=Decimal("1"), available=Decimal("2")
        ).raise_for_insufficient()


class TestLocalBalance:
    """Tests for LocalBalanceData and BalanceFieldUpdate."""

    def test_negative_balance_rejected(self):
        """Balances cannot be negative."""
        with pytest.raises(ValueError, match="negative"):
            LocalBalanceData(user_id="u1", token_credits=Decimal("-0.01"))

    def test_field_update_only_set_fields(self):
        """as_values only includes fields that were set."""
        update = BalanceFieldUpdate(last_refill=NOW, refill_interval_unit=IntervalUnit.WEEKS)
        assert update.as_values() == {"last_refill": NOW, "refill_interval_unit": "weeks"}
        assert BalanceFieldUpdate().as_values() == {}


class TestPromptTokenBreakdown:
    """Tests for PromptTokenBreakdown."""

    def test_total(self):
        """Total sums all categories."""
        assert PromptTokenBreakdown(input=100, write=20, read=300).total == 420

    def test_negative_rejected(self):
        """Negative counts are rejected."""
        with pytest.raises(ValueError):
            PromptTokenBreakdown(input=-1)


class TestMaintenanceReport:
    """Tests for MaintenanceReport."""

    def test_total_excludes_cleaned(self):
        """Total counts users processed, not rows cleaned."""
        report = MaintenanceReport(successful=3, failed=1, skipped=2, cleaned=7)
        assert report.total == 6
