"""
Local Ledger - optimistic-concurrency balance updates.

Used when the metering authority is not authoritative (self-hosted/legacy
accounting). Balances are updated without row locks: read, compute, then a
conditional write that only lands if nobody else wrote in between. Losers
back off and start over.

Invariants:
- no lost updates: every write is conditional on the value it was derived from
- token_credits never goes negative: results are clamped at zero
"""

import asyncio
import calendar
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from creditgate.db.models import Balance
from creditgate.exceptions import ConcurrencyExhaustedError
from creditgate.models.api import IntervalUnit, SpendContext, TokenType
from creditgate.models.domain import (
    ZERO,
    BalanceCheck,
    BalanceFieldUpdate,
    LocalBalanceData,
    TransactionIntent,
)
from creditgate.observability.metrics import metrics
from creditgate.services.transactions import TransactionLog

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_interval(date: datetime, value: int, unit: IntervalUnit) -> datetime:
    """
    Add a refill interval to a date.

    Months are calendar months; the day is clamped to the target month's
    length (Jan 31 + 1 month = Feb 28/29).
    """
    if unit == IntervalUnit.SECONDS:
        return date + timedelta(seconds=value)
    if unit == IntervalUnit.MINUTES:
        return date + timedelta(minutes=value)
    if unit == IntervalUnit.HOURS:
        return date + timedelta(hours=value)
    if unit == IntervalUnit.DAYS:
        return date + timedelta(days=value)
    if unit == IntervalUnit.WEEKS:
        return date + timedelta(weeks=value)
    if unit == IntervalUnit.MONTHS:
        month_index = date.month - 1 + value
        year = date.year + month_index // 12
        month = month_index % 12 + 1
        day = min(date.day, calendar.monthrange(year, month)[1])
        return date.replace(year=year, month=month, day=day)
    raise ValueError(f"Unknown interval unit: {unit}")


def _to_domain(row: Balance) -> LocalBalanceData:
    """Convert ORM balance to domain model."""
    return LocalBalanceData(
        user_id=row.user_id,
        token_credits=row.token_credits,
        auto_refill_enabled=row.auto_refill_enabled,
        refill_amount=row.refill_amount,
        refill_interval_value=row.refill_interval_value,
        refill_interval_unit=IntervalUnit(row.refill_interval_unit),
        last_refill=row.last_refill,
    )


class BalanceRepository:
    """
    Persistence for local balance records.

    Write methods report a lost race by returning None instead of raising,
    so the ledger can retry.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> LocalBalanceData | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Balance).where(Balance.user_id == user_id))
            row = result.scalar_one_or_none()
            return _to_domain(row) if row is not None else None

    async def compare_and_set(
        self,
        user_id: str,
        expected: Decimal,
        new: Decimal,
        extra: BalanceFieldUpdate | None = None,
    ) -> LocalBalanceData | None:
        """Write `new` only if the stored balance still equals `expected`."""
        values = extra.as_values() if extra is not None else {}
        async with self._session_factory() as session:
            stmt = (
                update(Balance)
                .where(Balance.user_id == user_id, Balance.token_credits == expected)
                .values(token_credits=new, updated_at=_utc_now(), **values)
                .returning(Balance)
            )
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
            await session.commit()
            return _to_domain(row) if row is not None else None

    async def insert(
        self,
        user_id: str,
        credits: Decimal,
        extra: BalanceFieldUpdate | None = None,
    ) -> LocalBalanceData | None:
        """Create the record. Returns None if a concurrent insert won."""
        values = extra.as_values() if extra is not None else {}
        async with self._session_factory() as session:
            row = Balance(user_id=user_id, token_credits=credits, **values)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return _to_domain(row)


class LocalLedger:
    """
    Compare-and-set retry loop over a BalanceRepository.

    Backoff starts at base_delay, doubles per attempt and is capped at
    max_delay; each sleep adds jitter drawn from U(0, delay / 2).
    """

    def __init__(
        self,
        repository: BalanceRepository,
        transactions: TransactionLog | None = None,
        max_attempts: int = 10,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repository = repository
        self._transactions = transactions
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def get_balance(self, user_id: str) -> LocalBalanceData | None:
        """Current record, or None if the user has never spent locally."""
        return await self._repository.get(user_id)

    async def apply_delta(
        self,
        user_id: str,
        delta: Decimal,
        extra: BalanceFieldUpdate | None = None,
    ) -> LocalBalanceData:
        """
        Add `delta` (negative for spends) to the user's balance.

        Raises:
            ConcurrencyExhaustedError: the write never landed; the caller must
                treat the spend/refill as not applied.
        """
        delay = self.base_delay

        for attempt in range(1, self.max_attempts + 1):
            record = await self._attempt(user_id, delta, extra, attempt)
            if record is not None:
                if attempt > 1:
                    logger.info("ledger_write_landed", user_id=user_id, attempts=attempt)
                return record

            metrics.ledger_conflicts_total.inc()
            if attempt == self.max_attempts:
                break

            wait = min(delay + random.uniform(0, delay / 2), self.max_delay)
            logger.debug(
                "ledger_write_conflict",
                user_id=user_id,
                attempt=attempt,
                retry_in_seconds=round(wait, 3),
            )
            await self._sleep(wait)
            delay = min(delay * 2, self.max_delay)

        metrics.ledger_exhausted_total.inc()
        logger.error(
            "ledger_write_exhausted",
            user_id=user_id,
            delta=str(delta),
            attempts=self.max_attempts,
        )
        raise ConcurrencyExhaustedError(user_id, self.max_attempts)

    async def check_spendable(
        self, user_id: str, cost: Decimal, now: datetime | None = None
    ) -> BalanceCheck:
        """
        Can this user spend `cost` credits from the local ledger?

        When the spend would empty the balance and auto-refill is due, the
        refill is applied (and audited) before comparing.
        """
        record = await self._repository.get(user_id)
        if record is None:
            logger.debug("local_balance_missing", user_id=user_id)
            return BalanceCheck(can_spend=False, balance=ZERO, token_cost=cost)

        now = now or _utc_now()
        balance = record.token_credits
        refilled = False

        if self._refill_due(record, cost, now):
            try:
                updated = await self.apply_delta(
                    user_id, record.refill_amount, BalanceFieldUpdate(last_refill=now)
                )
            except ConcurrencyExhaustedError as e:
                logger.error("auto_refill_failed", user_id=user_id, error=str(e))
            else:
                balance = updated.token_credits
                refilled = True
                await self._audit_refill(user_id, record.refill_amount)

        return BalanceCheck(
            can_spend=balance >= cost, balance=balance, token_cost=cost, refilled=refilled
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _attempt(
        self,
        user_id: str,
        delta: Decimal,
        extra: BalanceFieldUpdate | None,
        attempt: int,
    ) -> LocalBalanceData | None:
        try:
            current = await self._repository.get(user_id)
            if current is None:
                return await self._repository.insert(user_id, max(ZERO, delta), extra)

            new_credits = current.token_credits + delta
            if new_credits < 0:
                logger.info(
                    "ledger_balance_clamped",
                    user_id=user_id,
                    balance=str(current.token_credits),
                    delta=str(delta),
                )
                new_credits = ZERO
            return await self._repository.compare_and_set(
                user_id, current.token_credits, new_credits, extra
            )
        except SQLAlchemyError as e:
            logger.warning(
                "ledger_write_error",
                user_id=user_id,
                attempt=attempt,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    @staticmethod
    def _refill_due(record: LocalBalanceData, cost: Decimal, now: datetime) -> bool:
        if not record.auto_refill_enabled or record.refill_amount <= 0:
            return False
        if record.token_credits - cost > 0:
            return False
        if record.last_refill is None:
            return True
        next_refill = add_interval(
            record.last_refill, record.refill_interval_value, record.refill_interval_unit
        )
        return now >= next_refill

    async def _audit_refill(self, user_id: str, amount: Decimal) -> None:
        logger.info("auto_refill_applied", user_id=user_id, amount=str(amount))
        if self._transactions is None:
            return
        await self._transactions.record(
            TransactionIntent(
                user_id=user_id,
                token_type=TokenType.CREDITS,
                raw_amount=amount,
                rate=Decimal("1"),
                token_value=amount,
                model=None,
                context=SpendContext.AUTO_REFILL.value,
            )
        )
