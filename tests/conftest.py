"""Shared test fixtures for aumos-usage-metering tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from aumos_usage_metering.adapters.repositories import (
    MonthlySummaryRepository,
    TenantAccountRepository,
    UsageEventRepository,
)
from aumos_usage_metering.core.interfaces import ProviderReceipt
from aumos_usage_metering.core.models import TenantAccount, UsageEvent
from aumos_usage_metering.core.pricing import DEFAULT_PRICING, PricingTable
from aumos_usage_metering.core.reconciler import Reconciler
from aumos_usage_metering.core.services import (
    AccountService,
    Aggregator,
    QuotaGuardService,
    UsageLedgerService,
)
from aumos_usage_metering.database import Base
from aumos_usage_metering.errors import TransientSyncError
from aumos_usage_metering.settings import Settings


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeBillingProvider:
    """In-memory provider that de-duplicates on the idempotency key.

    failures: exceptions raised (in order) by the next submissions.
    lose_next_response: record the charge, then raise as if the response was lost.
    """

    def __init__(self) -> None:
        self.charges: dict[str, str] = {}
        self.calls: list[str] = []
        self.failures: list[Exception] = []
        self.lose_next_response = False
        self.delay_seconds = 0.0

    async def submit_usage(
        self,
        idempotency_key: str,
        tenant_external_ref: str,
        kind: str,
        quantity: int,
        timestamp: datetime,
    ) -> ProviderReceipt:
        self.calls.append(idempotency_key)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.failures:
            raise self.failures.pop(0)
        if idempotency_key in self.charges:
            return ProviderReceipt(external_ref=self.charges[idempotency_key], duplicate=True)
        self.charges[idempotency_key] = f"ur_{len(self.charges) + 1}"
        if self.lose_next_response:
            self.lose_next_response = False
            raise TransientSyncError("connection reset while reading response")
        return ProviderReceipt(external_ref=self.charges[idempotency_key])


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time."""
    return datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now: datetime) -> FakeClock:
    return FakeClock(now)


@pytest.fixture
def tenant_id() -> str:
    """Provide a consistent test tenant ID."""
    return "test-tenant-001"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Provide test settings backed by a throwaway SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'metering.db'}",
        log_format="console",
        default_tier="free",
        provider_base_url="http://billing-test",
        provider_timeout_seconds=2.0,
        reconciler_enabled=False,
        reconciler_batch_size=10,
        reconciler_max_attempts=5,
        reconciler_backoff_base_seconds=30.0,
        reconciler_backoff_cap_seconds=3600.0,
        reconciler_lease_seconds=60.0,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine with all met_ tables created.

    NullPool gives every session its own connection so concurrent writers
    really contend; the busy timeout makes them queue instead of failing.
    """
    engine = create_async_engine(
        settings.database_url,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


def _build_ledger(
    session: AsyncSession,
    settings: Settings,
    clock: FakeClock,
    pricing: PricingTable = DEFAULT_PRICING,
    publisher: object | None = None,
) -> UsageLedgerService:
    """Wire a UsageLedgerService the way the API dependencies do."""
    accounts = AccountService(TenantAccountRepository(session), settings)
    aggregator = Aggregator(MonthlySummaryRepository(session), accounts, pricing, clock=clock)
    return UsageLedgerService(
        session=session,
        event_repo=UsageEventRepository(session),
        aggregator=aggregator,
        pricing=pricing,
        publisher=publisher,  # type: ignore[arg-type]
        clock=clock,
    )


def _build_quota_guard(
    session: AsyncSession,
    settings: Settings,
    clock: FakeClock,
    pricing: PricingTable = DEFAULT_PRICING,
) -> QuotaGuardService:
    accounts = AccountService(TenantAccountRepository(session), settings)
    aggregator = Aggregator(MonthlySummaryRepository(session), accounts, pricing, clock=clock)
    return QuotaGuardService(aggregator, accounts, pricing, clock=clock)


RecordUsage = Callable[..., Awaitable[UsageEvent]]


@pytest.fixture
def record_usage(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FakeClock,
) -> RecordUsage:
    """Record one event in its own session, like one API request."""

    async def _record(
        tenant_id: str,
        kind: str,
        quantity: int = 1,
        occurred_at: datetime | None = None,
        pricing: PricingTable = DEFAULT_PRICING,
    ) -> UsageEvent:
        async with session_factory() as session:
            ledger = _build_ledger(session, settings, clock, pricing)
            return await ledger.record(tenant_id, kind, quantity=quantity, occurred_at=occurred_at)

    return _record


@pytest.fixture
def set_account(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> Callable[..., Awaitable[TenantAccount]]:
    async def _set(tenant_id: str, tier: str, external_customer_ref: str | None = None) -> TenantAccount:
        async with session_factory() as session:
            accounts = AccountService(TenantAccountRepository(session), settings)
            return await accounts.set_account(session, tenant_id, tier, external_customer_ref)

    return _set


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    provider: FakeBillingProvider,
    settings: Settings,
    clock: FakeClock,
) -> Reconciler:
    return Reconciler(
        session_factory=session_factory,
        provider=provider,
        settings=settings,
        event_repo_factory=UsageEventRepository,
        account_repo_factory=TenantAccountRepository,
        clock=clock,
    )


@pytest.fixture
def load_event(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[UsageEvent]]:
    """Fetch a fresh copy of a ledger entry."""

    async def _load(event_id: object) -> UsageEvent:
        async with session_factory() as session:
            usage_event = await session.get(UsageEvent, event_id)
            assert usage_event is not None
            return usage_event

    return _load


@pytest.fixture
def ledger_factory(settings: Settings, clock: FakeClock) -> Callable[..., UsageLedgerService]:
    def _factory(
        session: AsyncSession,
        pricing: PricingTable = DEFAULT_PRICING,
        publisher: object | None = None,
    ) -> UsageLedgerService:
        return _build_ledger(session, settings, clock, pricing, publisher)

    return _factory


@pytest.fixture
def quota_guard_factory(settings: Settings, clock: FakeClock) -> Callable[..., QuotaGuardService]:
    def _factory(session: AsyncSession, pricing: PricingTable = DEFAULT_PRICING) -> QuotaGuardService:
        return _build_quota_guard(session, settings, clock, pricing)

    return _factory
