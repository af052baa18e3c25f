"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed dataclasses.
Immutable except for the balance cache entry, which is owned and mutated
only by the balance cache between awaits.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from creditgate.exceptions import InsufficientBalanceError
from creditgate.models.api import CredentialKind, ErrorCode, IntervalUnit, TokenType

ZERO = Decimal("0")


# ============================================================================
# Credentials
# ============================================================================


def credential_identifier(provider: str, kind: CredentialKind) -> str:
    """Storage identifier for a provider credential ("ares", "ares:refresh")."""
    if kind == CredentialKind.REFRESH:
        return f"{provider}:refresh"
    return provider


@dataclass(frozen=True)
class Credential:
    """Stored (encrypted) credential for one user and provider."""

    user_id: str
    provider: str
    kind: CredentialKind
    ciphertext: str
    expires_at: datetime
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate credential fields."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.ciphertext:
            raise ValueError("ciphertext cannot be empty")

    @property
    def identifier(self) -> str:
        return credential_identifier(self.provider, self.kind)

    def is_expired(self, now: datetime) -> bool:
        """True once the credential's stated expiry has passed."""
        return now >= self.expires_at

    def is_fresh(self, now: datetime, skew: timedelta) -> bool:
        """True while the credential is usable with the skew buffer applied."""
        return now + skew < self.expires_at


@dataclass(frozen=True)
class TokenGrant:
    """Result of a refresh grant at the token endpoint."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    refresh_expires_in: int | None = None
    token_type: str = "Bearer"

    def __post_init__(self) -> None:
        """Validate grant fields."""
        if not self.access_token:
            raise ValueError("access_token cannot be empty")
        if self.expires_in <= 0:
            raise ValueError(f"expires_in must be positive: {self.expires_in}")


# ============================================================================
# Balance Cache
# ============================================================================


@dataclass
class BalanceCacheEntry:
    """
    Cached remote balance plus credits provisionally held by in-flight requests.

    observed_at moves forward on every fresh hit; fetched_at only when the
    authority was actually asked.
    """

    user_id: str
    remote_credits: Decimal
    observed_at: float
    fetched_at: float
    pending_reserved: Decimal = ZERO
    generation: int = 0

    @property
    def available_credits(self) -> Decimal:
        return self.remote_credits - self.pending_reserved


@dataclass(frozen=True)
class Reservation:
    """A provisional hold against a cached balance."""

    user_id: str
    amount: Decimal
    generation: int
    reservation_id: UUID = field(default_factory=uuid4)


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of an admission check. Insufficient funds is a result, not an error."""

    allowed: bool
    user_id: str
    required: Decimal
    available: Decimal
    degraded: bool = False
    reservation: Reservation | None = None

    def raise_for_insufficient(self) -> None:
        """Raise InsufficientBalanceError if the reservation was refused."""
        if not self.allowed:
            raise InsufficientBalanceError(self.available, self.required)


@dataclass(frozen=True)
class UsageAck:
    """Acknowledgement of a usage report from the metering authority."""

    user_id: str
    credits: Decimal
    remaining_credits: Decimal | None = None


# ============================================================================
# Local Ledger
# ============================================================================


@dataclass(frozen=True)
class BalanceFieldUpdate:
    """Extra balance fields written alongside a credit delta."""

    last_refill: datetime | None = None
    auto_refill_enabled: bool | None = None
    refill_amount: Decimal | None = None
    refill_interval_value: int | None = None
    refill_interval_unit: IntervalUnit | None = None

    def as_values(self) -> dict[str, Any]:
        """Column values for the fields that were set."""
        values: dict[str, Any] = {}
        if self.last_refill is not None:
            values["last_refill"] = self.last_refill
        if self.auto_refill_enabled is not None:
            values["auto_refill_enabled"] = self.auto_refill_enabled
        if self.refill_amount is not None:
            values["refill_amount"] = self.refill_amount
        if self.refill_interval_value is not None:
            values["refill_interval_value"] = self.refill_interval_value
        if self.refill_interval_unit is not None:
            values["refill_interval_unit"] = self.refill_interval_unit.value
        return values


@dataclass(frozen=True)
class LocalBalanceData:
    """Immutable local balance snapshot."""

    user_id: str
    token_credits: Decimal
    auto_refill_enabled: bool = False
    refill_amount: Decimal = ZERO
    refill_interval_value: int = 30
    refill_interval_unit: IntervalUnit = IntervalUnit.DAYS
    last_refill: datetime | None = None

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.token_credits < 0:
            raise ValueError(f"Balance cannot be negative: {self.token_credits}")


@dataclass(frozen=True)
class BalanceCheck:
    """Result of a local spendability check."""

    can_spend: bool
    balance: Decimal
    token_cost: Decimal
    refilled: bool = False


# ============================================================================
# Spend / Transactions
# ============================================================================


@dataclass(frozen=True)
class PromptTokenBreakdown:
    """Prompt tokens split by cache category."""

    input: int = 0
    write: int = 0
    read: int = 0

    def __post_init__(self) -> None:
        """Validate token counts."""
        if min(self.input, self.write, self.read) < 0:
            raise ValueError("Token counts cannot be negative")

    @property
    def total(self) -> int:
        return self.input + self.write + self.read


@dataclass(frozen=True)
class TokenUsage:
    """Usage counts reported by the upstream model-serving API."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    prompt_breakdown: PromptTokenBreakdown | None = None


@dataclass(frozen=True)
class TransactionIntent:
    """Audit transaction before persistence - immutable intent."""

    user_id: str
    token_type: TokenType
    raw_amount: Decimal
    rate: Decimal
    token_value: Decimal
    model: str | None
    context: str | None
    conversation_id: str | None = None
    input_tokens: int | None = None
    write_tokens: int | None = None
    read_tokens: int | None = None


@dataclass(frozen=True)
class TransactionRecord:
    """Immutable audit transaction after persistence."""

    transaction_id: UUID
    user_id: str
    token_type: TokenType
    raw_amount: Decimal
    rate: Decimal
    token_value: Decimal
    model: str | None
    context: str | None
    conversation_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class SpendResult:
    """Result of charging one token category."""

    credits_charged: Decimal
    exact_credits: Decimal
    new_balance: Decimal | None
    transaction: TransactionRecord | None = None


@dataclass(frozen=True)
class UsageCharge:
    """Result of charging a full usage report (prompt + completion, rounded once)."""

    credits_charged: Decimal
    exact_credits: Decimal
    prompt_credits: Decimal
    completion_credits: Decimal
    new_balance: Decimal | None
    transactions: tuple[TransactionRecord, ...] = ()


# ============================================================================
# Request Gate
# ============================================================================


@dataclass(frozen=True)
class AdmissionResult:
    """Structured admission outcome - errors never escape as raw exceptions."""

    ok: bool
    user_id: str
    error: ErrorCode | None = None
    message: str | None = None
    bearer_token: str | None = None
    reservation: Reservation | None = None
    balance: Decimal | None = None
    required: Decimal | None = None
    degraded: bool = False


@dataclass(frozen=True)
class SettlementResult:
    """Structured settlement outcome."""

    ok: bool
    user_id: str
    error: ErrorCode | None = None
    message: str | None = None
    charge: UsageCharge | None = None


# ============================================================================
# Token Maintenance
# ============================================================================


@dataclass(frozen=True)
class MaintenanceReport:
    """Summary of one proactive refresh cycle."""

    successful: int = 0
    failed: int = 0
    skipped: int = 0
    cleaned: int = 0
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.successful + self.failed + self.skipped
