"""
FastAPI Dependencies - service wiring and caller identity.

NO DICTIONARIES - All dependencies return typed objects.

The pending-refresh map and the balance cache are process-wide state, so the
services that own them are built once per process and shared by every
request.
"""

from dataclasses import dataclass
from datetime import timedelta

import httpx
from fastapi import Header, HTTPException, status
from structlog import get_logger

from creditgate.config import Settings, settings
from creditgate.crypto import CredentialCipher
from creditgate.db.session import get_session_factory
from creditgate.models.api import AccountingMode
from creditgate.services.authority_client import AuthorityClient
from creditgate.services.balance_cache import MeteredBalanceCache
from creditgate.services.credential_store import CredentialStore
from creditgate.services.local_ledger import BalanceRepository, LocalLedger
from creditgate.services.rates import ChargePolicy, RateTable
from creditgate.services.refresh_coordinator import RefreshCoordinator
from creditgate.services.remote_balance import RemoteBalanceGateway
from creditgate.services.request_gate import RequestGate
from creditgate.services.spend_recorder import SpendRecorder
from creditgate.services.token_exchange import TokenExchangeClient
from creditgate.services.token_maintenance import TokenMaintenanceService
from creditgate.services.transactions import TransactionLog

logger = get_logger(__name__)


@dataclass
class GatewayServices:
    """Process-wide service graph."""

    mode: AccountingMode
    credential_store: CredentialStore
    token_exchange: TokenExchangeClient
    coordinator: RefreshCoordinator
    authority: AuthorityClient
    gateway: RemoteBalanceGateway
    cache: MeteredBalanceCache
    ledger: LocalLedger
    transactions: TransactionLog
    recorder: SpendRecorder
    gate: RequestGate
    maintenance: TokenMaintenanceService

    async def close(self) -> None:
        """Stop background work and close HTTP clients."""
        await self.maintenance.stop()
        self.cache.clear()
        await self.authority.close()
        await self.token_exchange.close()


def build_services(
    config: Settings, http_client: httpx.AsyncClient | None = None
) -> GatewayServices:
    """Build the service graph from settings."""
    session_factory = get_session_factory()
    mode = AccountingMode(config.accounting_mode)
    skew = timedelta(seconds=config.credential_skew_seconds)

    store = CredentialStore(session_factory)
    exchange = TokenExchangeClient(
        token_url=config.oauth_token_url,
        client_id=config.oauth_client_id,
        client_secret=config.oauth_client_secret,
        timeout=config.token_exchange_timeout,
        http_client=http_client,
    )
    coordinator = RefreshCoordinator(
        store,
        exchange,
        CredentialCipher(config.credential_encryption_key),
        provider=config.oauth_provider,
        skew_buffer=skew,
        default_refresh_ttl=timedelta(seconds=config.refresh_credential_ttl_seconds),
    )
    authority = AuthorityClient(
        config.authority_base_url,
        coordinator,
        http_client=http_client,
        client_name=config.authority_client_name,
        timeout=config.authority_timeout,
    )
    gateway = RemoteBalanceGateway(authority)
    cache = MeteredBalanceCache(
        gateway,
        ttl=config.balance_cache_ttl_seconds,
        pending_ttl=config.pending_ttl_seconds,
        max_staleness=config.balance_max_staleness_seconds,
    )
    transactions = TransactionLog(session_factory)
    ledger = LocalLedger(
        BalanceRepository(session_factory),
        transactions,
        max_attempts=config.ledger_max_attempts,
        base_delay=config.ledger_base_delay_seconds,
        max_delay=config.ledger_max_delay_seconds,
    )
    recorder = SpendRecorder(
        RateTable(default_rate=config.default_token_rate),
        ChargePolicy(
            credit_unit_price=config.credit_unit_price,
            epsilon=config.charge_epsilon,
            minimum_charge=config.minimum_charge,
            cancel_rate=config.cancel_rate,
        ),
        transactions,
        mode,
        gateway=gateway,
        ledger=ledger,
        cache=cache,
    )
    gate = RequestGate(coordinator, recorder, mode, cache=cache, ledger=ledger)
    maintenance = TokenMaintenanceService(
        store,
        coordinator,
        interval=timedelta(seconds=config.token_maintenance_interval_seconds),
        activity_window=timedelta(days=config.token_activity_window_days),
    )

    logger.info(
        "services_built",
        accounting_mode=mode.value,
        provider=config.oauth_provider,
        cache_ttl_seconds=config.balance_cache_ttl_seconds,
    )
    return GatewayServices(
        mode=mode,
        credential_store=store,
        token_exchange=exchange,
        coordinator=coordinator,
        authority=authority,
        gateway=gateway,
        cache=cache,
        ledger=ledger,
        transactions=transactions,
        recorder=recorder,
        gate=gate,
        maintenance=maintenance,
    )


_services: GatewayServices | None = None


def get_services() -> GatewayServices:
    """FastAPI dependency: the process-wide service graph."""
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


async def close_services() -> None:
    """Tear down the service graph (for graceful shutdown)."""
    global _services
    if _services is not None:
        await _services.close()
        _services = None


async def get_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    """
    Caller identity.

    Session authentication happens in front of this service; the fronting
    gateway forwards the authenticated user id in X-User-Id.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id
