"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Error codes surfaced to callers of the gateway core."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    CONCURRENCY_EXHAUSTED = "CONCURRENCY_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class CredentialKind(str, Enum):
    """Stored credential kind."""

    ACCESS = "access"
    REFRESH = "refresh"


class TokenType(str, Enum):
    """Token category used for pricing and audit records."""

    PROMPT = "prompt"
    COMPLETION = "completion"
    CREDITS = "credits"


class CacheTokenType(str, Enum):
    """Prompt-cache token categories priced separately from plain input."""

    WRITE = "write"
    READ = "read"


class AccountingMode(str, Enum):
    """Which ledger is authoritative for charges."""

    REMOTE = "remote"
    LOCAL = "local"


class IntervalUnit(str, Enum):
    """Auto-refill interval unit."""

    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class SpendContext(str, Enum):
    """Well-known transaction contexts with charging semantics."""

    MESSAGE = "message"
    INCOMPLETE = "incomplete"
    TITLE = "title"
    AUTO_REFILL = "autoRefill"


# ============================================================================
# Error Responses
# ============================================================================


class ErrorResponse(BaseModel):
    """Structured error body returned to callers."""

    error: ErrorCode
    message: str
    balance: Decimal | None = None
    required: Decimal | None = None
    redirect_url: str | None = Field(
        None, description="Where the client should send the user to re-authenticate"
    )


# ============================================================================
# Balance Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/balance response."""

    user_id: str
    credits: Decimal = Field(..., description="Remote balance minus pending reservations")
    remote_credits: Decimal
    pending_reserved: Decimal = Decimal("0")
    mode: AccountingMode


# ============================================================================
# Status Models
# ============================================================================


class MaintenanceStatus(BaseModel):
    """Token maintenance job state."""

    running: bool
    interval_seconds: float
    last_run_at: str | None = Field(None, description="ISO 8601 timestamp")
    last_successful: int | None = None
    last_failed: int | None = None
    last_skipped: int | None = None
    last_cleaned: int | None = None


# ============================================================================
# Transaction Models
# ============================================================================


class TransactionItem(BaseModel):
    """One audit transaction."""

    transaction_id: str
    token_type: TokenType
    raw_amount: Decimal
    rate: Decimal
    token_value: Decimal
    model: str | None = None
    context: str | None = None
    conversation_id: str | None = None
    created_at: str = Field(..., description="ISO 8601 timestamp")


class TransactionListResponse(BaseModel):
    """GET /v1/transactions response."""

    user_id: str
    transactions: list[TransactionItem]
