"""
Spend Recorder - prices token usage, audits it, and charges the active ledger.

Order of operations is fixed: the audit Transaction is committed first, the
charge second. A failed charge propagates to the caller but the audit row
stays, so spend history is complete even when billing is not.

Sign convention for audit rows: spends carry negative raw_amount and
token_value; refills carry positive ones.
"""

from decimal import Decimal

from structlog import get_logger

from creditgate.exceptions import GatewayError
from creditgate.models.api import AccountingMode, CacheTokenType, SpendContext, TokenType
from creditgate.models.domain import (
    ZERO,
    PromptTokenBreakdown,
    Reservation,
    SpendResult,
    TokenUsage,
    TransactionIntent,
    TransactionRecord,
    UsageCharge,
)
from creditgate.observability.metrics import metrics
from creditgate.services.balance_cache import MeteredBalanceCache
from creditgate.services.local_ledger import LocalLedger
from creditgate.services.rates import ChargePolicy, RateTable
from creditgate.services.remote_balance import RemoteBalanceGateway
from creditgate.services.transactions import TransactionLog

logger = get_logger(__name__)


class SpendRecorder:
    """
    Converts raw token counts to credits and drives the active ledger.

    Remote mode reports usage to the metering authority and settles the
    balance cache; local mode decrements the local ledger.
    """

    def __init__(
        self,
        rates: RateTable,
        policy: ChargePolicy,
        transactions: TransactionLog,
        mode: AccountingMode,
        gateway: RemoteBalanceGateway | None = None,
        ledger: LocalLedger | None = None,
        cache: MeteredBalanceCache | None = None,
    ) -> None:
        if mode == AccountingMode.REMOTE and gateway is None:
            raise ValueError("remote accounting requires a RemoteBalanceGateway")
        if mode == AccountingMode.LOCAL and ledger is None:
            raise ValueError("local accounting requires a LocalLedger")
        self.rates = rates
        self.policy = policy
        self.mode = mode
        self._transactions = transactions
        self._gateway = gateway
        self._ledger = ledger
        self._cache = cache

    async def record_spend(
        self,
        user_id: str,
        model: str | None,
        category: TokenType,
        raw_tokens: int,
        context: str | None = None,
        conversation_id: str | None = None,
        reservation: Reservation | None = None,
    ) -> SpendResult:
        """
        Charge one token category.

        Raises whatever the active ledger raises (RemoteUnavailableError,
        AuthRequiredError, ConcurrencyExhaustedError); the audit row is
        already committed by then.
        """
        if context == SpendContext.TITLE:
            self._release(reservation)
            logger.info("spend_skipped_title", user_id=user_id, conversation_id=conversation_id)
            return SpendResult(credits_charged=ZERO, exact_credits=ZERO, new_balance=None)

        rate = self.policy.effective_rate(self.rates.price_of(model, category), category, context)
        exact = self.policy.credits_for(raw_tokens, rate)
        transaction = await self._transactions.record(
            self._spend_intent(
                user_id, category, raw_tokens, rate, exact, model, context, conversation_id
            )
        )

        charged = self.policy.round_charge(exact)
        description = f"{model} {category.value} tokens ({exact:.3f} exact)"
        new_balance = await self._charge(
            user_id, charged, description, reservation, (transaction,)
        )
        return SpendResult(
            credits_charged=charged,
            exact_credits=exact,
            new_balance=new_balance,
            transaction=transaction,
        )

    async def record_usage(
        self,
        user_id: str,
        model: str | None,
        usage: TokenUsage,
        context: str | None = None,
        conversation_id: str | None = None,
        reservation: Reservation | None = None,
    ) -> UsageCharge:
        """
        Charge a full usage report: one audit row per category, one charge.

        Exact credits are summed across categories and rounded once, so a
        prompt and completion that are each below the minimum are not each
        charged the minimum.
        """
        if context == SpendContext.TITLE:
            self._release(reservation)
            logger.info("spend_skipped_title", user_id=user_id, conversation_id=conversation_id)
            return UsageCharge(
                credits_charged=ZERO,
                exact_credits=ZERO,
                prompt_credits=ZERO,
                completion_credits=ZERO,
                new_balance=None,
            )

        records: list[TransactionRecord] = []
        prompt_credits = ZERO
        completion_credits = ZERO

        if usage.prompt_breakdown is not None:
            prompt_credits, record = await self._record_structured_prompt(
                user_id, model, usage.prompt_breakdown, context, conversation_id
            )
            records.append(record)
        elif usage.prompt_tokens is not None:
            rate = self.rates.price_of(model, TokenType.PROMPT)
            prompt_credits = self.policy.credits_for(usage.prompt_tokens, rate)
            records.append(
                await self._transactions.record(
                    self._spend_intent(
                        user_id,
                        TokenType.PROMPT,
                        usage.prompt_tokens,
                        rate,
                        prompt_credits,
                        model,
                        context,
                        conversation_id,
                    )
                )
            )

        if usage.completion_tokens is not None:
            rate = self.policy.effective_rate(
                self.rates.price_of(model, TokenType.COMPLETION), TokenType.COMPLETION, context
            )
            completion_credits = self.policy.credits_for(usage.completion_tokens, rate)
            records.append(
                await self._transactions.record(
                    self._spend_intent(
                        user_id,
                        TokenType.COMPLETION,
                        usage.completion_tokens,
                        rate,
                        completion_credits,
                        model,
                        context,
                        conversation_id,
                    )
                )
            )

        exact = prompt_credits + completion_credits
        charged = self.policy.round_charge(exact)
        description = (
            f"{model} tokens ({prompt_credits:.3f} prompt + {completion_credits:.3f} completion)"
        )
        new_balance = await self._charge(
            user_id, charged, description, reservation, tuple(records)
        )

        logger.info(
            "usage_charged",
            user_id=user_id,
            model=model,
            prompt_credits=str(prompt_credits),
            completion_credits=str(completion_credits),
            exact_credits=str(exact),
            credits_charged=str(charged),
            mode=self.mode.value,
        )
        return UsageCharge(
            credits_charged=charged,
            exact_credits=exact,
            prompt_credits=prompt_credits,
            completion_credits=completion_credits,
            new_balance=new_balance,
            transactions=tuple(records),
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _record_structured_prompt(
        self,
        user_id: str,
        model: str | None,
        breakdown: PromptTokenBreakdown,
        context: str | None,
        conversation_id: str | None,
    ) -> tuple[Decimal, TransactionRecord]:
        """Price input, cache-write and cache-read tokens each at their own rate."""

        input_rate = self.rates.price_of(model, TokenType.PROMPT)
        write_rate = self.rates.price_of(model, CacheTokenType.WRITE)
        read_rate = self.rates.price_of(model, CacheTokenType.READ)

        credits = (
            self.policy.credits_for(breakdown.input, input_rate)
            + self.policy.credits_for(breakdown.write, write_rate)
            + self.policy.credits_for(breakdown.read, read_rate)
        )
        total = breakdown.total
        # Blended rate keeps token_value derivable from raw_amount and rate
        blended = (
            credits * self.policy.credit_unit_price * Decimal(1_000_000) / Decimal(total)
            if total
            else input_rate
        )

        intent = TransactionIntent(
            user_id=user_id,
            token_type=TokenType.PROMPT,
            raw_amount=-Decimal(total),
            rate=blended,
            token_value=-credits,
            model=model,
            context=context,
            conversation_id=conversation_id,
            input_tokens=breakdown.input,
            write_tokens=breakdown.write,
            read_tokens=breakdown.read,
        )
        return credits, await self._transactions.record(intent)

    @staticmethod
    def _spend_intent(
        user_id: str,
        category: TokenType,
        raw_tokens: int,
        rate: Decimal,
        exact: Decimal,
        model: str | None,
        context: str | None,
        conversation_id: str | None,
    ) -> TransactionIntent:
        return TransactionIntent(
            user_id=user_id,
            token_type=category,
            raw_amount=-Decimal(max(raw_tokens, 0)),
            rate=rate,
            token_value=-exact,
            model=model,
            context=context,
            conversation_id=conversation_id,
        )

    async def _charge(
        self,
        user_id: str,
        charged: Decimal,
        description: str,
        reservation: Reservation | None,
        records: tuple[TransactionRecord, ...],
    ) -> Decimal | None:
        """Apply `charged` to the active ledger. Returns the new balance when known."""
        if charged <= 0:
            self._release(reservation)
            return None

        try:
            if self.mode == AccountingMode.REMOTE:
                assert self._gateway is not None
                ack = await self._gateway.report_usage(user_id, charged, description)
                if self._cache is not None:
                    self._cache.settle(user_id, charged, reservation)
                new_balance = ack.remaining_credits
            else:
                assert self._ledger is not None
                record = await self._ledger.apply_delta(user_id, -charged)
                self._release(reservation)
                new_balance = record.token_credits
        except GatewayError as e:
            self._release(reservation)
            metrics.record_charge_failure(self.mode.value, type(e).__name__)
            logger.error(
                "charge_failed",
                user_id=user_id,
                credits=str(charged),
                mode=self.mode.value,
                transaction_ids=[str(r.transaction_id) for r in records],
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        metrics.record_charge(self.mode.value, charged)
        return new_balance

    def _release(self, reservation: Reservation | None) -> None:
        if reservation is not None and self._cache is not None:
            self._cache.release(reservation)
