"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

CREDIT_PRECISION = Numeric(20, 6)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class StoredCredential(Base):
    """
    ORM model for credentials table.

    Encrypted upstream access/refresh secrets, one row per (user, identifier).
    """

    __tablename__ = "credentials"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    # "<provider>" for access, "<provider>:refresh" for refresh
    identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("kind IN ('access', 'refresh')", name="ck_credential_kind"),
        UniqueConstraint("user_id", "identifier", name="uq_credential_user_identifier"),
        Index("idx_credentials_expires_at", "expires_at"),
    )


class Balance(Base):
    """
    ORM model for balances table.

    Local ledger record, updated only through compare-and-set.
    """

    __tablename__ = "balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    token_credits: Mapped[Decimal] = mapped_column(CREDIT_PRECISION, nullable=False, default=0)

    # Auto-refill
    auto_refill_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refill_amount: Mapped[Decimal] = mapped_column(CREDIT_PRECISION, nullable=False, default=0)
    refill_interval_value: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    refill_interval_unit: Mapped[str] = mapped_column(String(16), nullable=False, default="days")
    last_refill: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("token_credits >= 0", name="ck_token_credits_non_negative"),
        CheckConstraint("refill_amount >= 0", name="ck_refill_amount_non_negative"),
    )


class Transaction(Base):
    """
    ORM model for transactions table.

    Append-only audit trail of every priced spend and refill.
    """

    __tablename__ = "transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    token_type: Mapped[str] = mapped_column(String(16), nullable=False)
    raw_amount: Mapped[Decimal] = mapped_column(CREDIT_PRECISION, nullable=False)
    rate: Mapped[Decimal] = mapped_column(CREDIT_PRECISION, nullable=False)
    token_value: Mapped[Decimal] = mapped_column(CREDIT_PRECISION, nullable=False)

    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Structured prompt breakdown
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    write_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    read_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "token_type IN ('prompt', 'completion', 'credits')", name="ck_transaction_token_type"
        ),
        Index("idx_transactions_user_created", "user_id", "created_at"),
    )
