"""
Transaction Log - append-only audit trail of priced spends and refills.

Each record commits in its own transaction, before any ledger is charged,
so spend history survives a failed charge.
"""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from creditgate.db.models import Transaction
from creditgate.models.api import TokenType
from creditgate.models.domain import TransactionIntent, TransactionRecord

logger = get_logger(__name__)


def _to_domain(row: Transaction) -> TransactionRecord:
    """Convert ORM transaction to domain model."""
    return TransactionRecord(
        transaction_id=row.id,
        user_id=row.user_id,
        token_type=TokenType(row.token_type),
        raw_amount=row.raw_amount,
        rate=row.rate,
        token_value=row.token_value,
        model=row.model,
        context=row.context,
        conversation_id=row.conversation_id,
        created_at=row.created_at,
    )


class TransactionLog:
    """Writes and reads audit transactions. Never updates or deletes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, intent: TransactionIntent) -> TransactionRecord:
        """Persist one audit transaction and commit it immediately."""
        async with self._session_factory() as session:
            row = Transaction(
                user_id=intent.user_id,
                token_type=intent.token_type.value,
                raw_amount=intent.raw_amount,
                rate=intent.rate,
                token_value=intent.token_value,
                model=intent.model,
                context=intent.context,
                conversation_id=intent.conversation_id,
                input_tokens=intent.input_tokens,
                write_tokens=intent.write_tokens,
                read_tokens=intent.read_tokens,
                created_at=datetime.now(UTC),
            )
            session.add(row)
            await session.commit()

            logger.info(
                "transaction_recorded",
                transaction_id=str(row.id),
                user_id=intent.user_id,
                token_type=intent.token_type.value,
                raw_amount=str(intent.raw_amount),
                token_value=str(intent.token_value),
                model=intent.model,
                context=intent.context,
            )
            return _to_domain(row)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[TransactionRecord]:
        """Most recent transactions for a user, newest first."""
        async with self._session_factory() as session:
            stmt = (
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_to_domain(row) for row in result.scalars().all()]
