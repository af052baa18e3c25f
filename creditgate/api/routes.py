"""
API Routes - balance and transaction lookups for the signed-in user.

NO DICTIONARIES - All responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, Query
from structlog import get_logger

from creditgate.api.dependencies import GatewayServices, get_services, get_user_id
from creditgate.models.api import (
    AccountingMode,
    BalanceResponse,
    TransactionItem,
    TransactionListResponse,
)
from creditgate.models.domain import ZERO

logger = get_logger(__name__)

router = APIRouter()


@router.get("/v1/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str = Depends(get_user_id),
    services: GatewayServices = Depends(get_services),
) -> BalanceResponse:
    """
    Current balance for the signed-in user.

    Remote mode asks the metering authority directly (this is a user-facing
    lookup, not an admission check) and subtracts credits still reserved by
    in-flight requests in this process. Local mode reads the local ledger.

    Errors: 401 AUTH_REQUIRED with redirect_url, 503 SERVICE_UNAVAILABLE.
    """
    if services.mode == AccountingMode.LOCAL:
        record = await services.ledger.get_balance(user_id)
        credits = record.token_credits if record is not None else ZERO
        return BalanceResponse(
            user_id=user_id,
            credits=credits,
            remote_credits=credits,
            mode=services.mode,
        )

    remote_credits = await services.gateway.get_balance(user_id)
    entry = services.cache.snapshot(user_id)
    pending = entry.pending_reserved if entry is not None else ZERO

    logger.debug(
        "balance_requested",
        user_id=user_id,
        remote_credits=str(remote_credits),
        pending_reserved=str(pending),
    )
    return BalanceResponse(
        user_id=user_id,
        credits=max(ZERO, remote_credits - pending),
        remote_credits=remote_credits,
        pending_reserved=pending,
        mode=services.mode,
    )


@router.get("/v1/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    services: GatewayServices = Depends(get_services),
) -> TransactionListResponse:
    """Most recent audit transactions for the signed-in user."""
    records = await services.transactions.list_for_user(user_id, limit=limit)
    return TransactionListResponse(
        user_id=user_id,
        transactions=[
            TransactionItem(
                transaction_id=str(record.transaction_id),
                token_type=record.token_type,
                raw_amount=record.raw_amount,
                rate=record.rate,
                token_value=record.token_value,
                model=record.model,
                context=record.context,
                conversation_id=record.conversation_id,
                created_at=record.created_at.isoformat(),
            )
            for record in records
        ],
    )
