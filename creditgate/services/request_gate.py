"""
Request Gate - per-request admission and settlement.

Control flow for one chat request:
    admit:  valid credential -> price the prompt -> reserve (remote) or
            check the local ledger (local)
    [caller makes the upstream model call with the bearer token]
    settle: charge actual usage through the SpendRecorder

Nothing raises across this boundary: every outcome, including failures, is
an AdmissionResult / SettlementResult carrying an ErrorCode.
"""

from decimal import Decimal

from structlog import get_logger

from creditgate.exceptions import (
    GatewayError,
    InsufficientBalanceError,
    error_code_for,
    user_message,
)
from creditgate.models.api import AccountingMode, ErrorCode, TokenType
from creditgate.models.domain import (
    AdmissionResult,
    Reservation,
    SettlementResult,
    TokenUsage,
)
from creditgate.services.balance_cache import MeteredBalanceCache
from creditgate.services.local_ledger import LocalLedger
from creditgate.services.refresh_coordinator import RefreshCoordinator
from creditgate.services.spend_recorder import SpendRecorder

logger = get_logger(__name__)


class RequestGate:
    """Wires coordinator, cache/ledger and recorder into admit/settle."""

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        recorder: SpendRecorder,
        mode: AccountingMode,
        cache: MeteredBalanceCache | None = None,
        ledger: LocalLedger | None = None,
    ) -> None:
        if mode == AccountingMode.REMOTE and cache is None:
            raise ValueError("remote accounting requires a MeteredBalanceCache")
        if mode == AccountingMode.LOCAL and ledger is None:
            raise ValueError("local accounting requires a LocalLedger")
        self._coordinator = coordinator
        self._recorder = recorder
        self._cache = cache
        self._ledger = ledger
        self.mode = mode

    def estimate(self, model: str | None, prompt_tokens: int) -> Decimal:
        """Credits the prompt alone would be charged."""
        rates = self._recorder.rates
        policy = self._recorder.policy
        exact = policy.credits_for(prompt_tokens, rates.price_of(model, TokenType.PROMPT))
        return policy.round_charge(exact)

    async def admit(self, user_id: str, model: str | None, prompt_tokens: int) -> AdmissionResult:
        """Decide whether a request may go upstream."""
        try:
            token = await self._coordinator.get_valid_credential(user_id)
            required = self.estimate(model, prompt_tokens)

            if self.mode == AccountingMode.REMOTE:
                return await self._admit_remote(user_id, token, required)
            return await self._admit_local(user_id, token, required)
        except Exception as e:
            code, message = self._failure("admit", user_id, e)
            return AdmissionResult(ok=False, user_id=user_id, error=code, message=message)

    async def settle(
        self,
        user_id: str,
        model: str | None,
        usage: TokenUsage,
        context: str | None = None,
        reservation: Reservation | None = None,
        conversation_id: str | None = None,
    ) -> SettlementResult:
        """
        Charge actual usage after the upstream call.

        On failure the caller must not assume the user was charged, and must
        not retry the same charge without re-deriving it.
        """
        try:
            charge = await self._recorder.record_usage(
                user_id,
                model,
                usage,
                context=context,
                conversation_id=conversation_id,
                reservation=reservation,
            )
        except Exception as e:
            code, message = self._failure("settle", user_id, e)
            return SettlementResult(ok=False, user_id=user_id, error=code, message=message)
        return SettlementResult(ok=True, user_id=user_id, charge=charge)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _admit_remote(self, user_id: str, token: str, required: Decimal) -> AdmissionResult:
        assert self._cache is not None
        result = await self._cache.reserve(user_id, required)
        if not result.allowed:
            error = InsufficientBalanceError(result.available, required)
            return AdmissionResult(
                ok=False,
                user_id=user_id,
                error=ErrorCode.INSUFFICIENT_BALANCE,
                message=user_message(error),
                balance=result.available,
                required=required,
            )
        return AdmissionResult(
            ok=True,
            user_id=user_id,
            bearer_token=token,
            reservation=result.reservation,
            balance=result.available,
            required=required,
            degraded=result.degraded,
        )

    async def _admit_local(self, user_id: str, token: str, required: Decimal) -> AdmissionResult:
        assert self._ledger is not None
        check = await self._ledger.check_spendable(user_id, required)
        if not check.can_spend:
            error = InsufficientBalanceError(check.balance, required)
            return AdmissionResult(
                ok=False,
                user_id=user_id,
                error=ErrorCode.INSUFFICIENT_BALANCE,
                message=user_message(error),
                balance=check.balance,
                required=required,
            )
        return AdmissionResult(
            ok=True,
            user_id=user_id,
            bearer_token=token,
            balance=check.balance,
            required=required,
        )

    @staticmethod
    def _failure(stage: str, user_id: str, error: Exception) -> tuple[ErrorCode, str]:
        """Log an error and turn it into result fields."""
        if isinstance(error, GatewayError):
            logger.warning(
                f"{stage}_failed",
                user_id=user_id,
                error_code=error.code.value,
                error_type=type(error).__name__,
                error=str(error),
            )
        else:
            logger.exception(f"{stage}_unexpected_error", user_id=user_id)
        return error_code_for(error), user_message(error)
