"""FastAPI router for the AumOS usage metering API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here.

The calling tenant is identified by the X-Tenant-ID header.

Endpoints:
  POST   /api/v1/metering/usage                             Record a billable usage event
  GET    /api/v1/metering/summaries/{YYYY-MM}               Monthly summary for the tenant
  GET    /api/v1/metering/limits                            Current-month quota status per kind
  GET    /api/v1/metering/events                            Recent ledger entries
  GET    /api/v1/metering/dead-letters                      Events needing manual intervention
  POST   /api/v1/metering/dead-letters/{event_id}/requeue   Return a dead-lettered event to pending
  PUT    /api/v1/metering/account                           Set tier and provider customer ref
  POST   /api/v1/metering/reconcile                         Run one reconciliation batch now
"""

import uuid
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from aumos_usage_metering.adapters.repositories import (
    MonthlySummaryRepository,
    TenantAccountRepository,
    UsageEventRepository,
)
from aumos_usage_metering.api.schemas import (
    AccountResponse,
    LimitsResponse,
    LimitStatusResponse,
    MonthlySummaryResponse,
    RecordUsageRequest,
    SetAccountRequest,
    SyncBatchRequest,
    SyncBatchResponse,
    UsageEventResponse,
)
from aumos_usage_metering.core.interfaces import IUsageEventPublisher
from aumos_usage_metering.core.models import month_start, utc_now
from aumos_usage_metering.core.pricing import PricingTable
from aumos_usage_metering.core.reconciler import Reconciler
from aumos_usage_metering.core.services import (
    AccountService,
    Aggregator,
    QuotaGuardService,
    UsageLedgerService,
)
from aumos_usage_metering.database import get_db_session
from aumos_usage_metering.errors import InvalidEventError, NotFoundError
from aumos_usage_metering.settings import Settings

router = APIRouter(prefix="/metering", tags=["metering"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_pricing(request: Request) -> PricingTable:
    return request.app.state.pricing


def _get_publisher(request: Request) -> IUsageEventPublisher | None:
    return getattr(request.app.state, "publisher", None)


def _get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


def _get_tenant_id(tenant_id: Annotated[str, Header(alias="X-Tenant-ID", min_length=1)]) -> str:
    """Calling tenant, from the X-Tenant-ID header."""
    return tenant_id


def _get_account_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(_get_settings)],
) -> AccountService:
    return AccountService(account_repo=TenantAccountRepository(session), settings=settings)


def _get_aggregator(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    accounts: Annotated[AccountService, Depends(_get_account_service)],
    pricing: Annotated[PricingTable, Depends(_get_pricing)],
) -> Aggregator:
    return Aggregator(
        summary_repo=MonthlySummaryRepository(session),
        accounts=accounts,
        pricing=pricing,
    )


def _get_ledger_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    aggregator: Annotated[Aggregator, Depends(_get_aggregator)],
    pricing: Annotated[PricingTable, Depends(_get_pricing)],
    publisher: Annotated[IUsageEventPublisher | None, Depends(_get_publisher)],
) -> UsageLedgerService:
    """Build UsageLedgerService sharing one session with its aggregator."""
    return UsageLedgerService(
        session=session,
        event_repo=UsageEventRepository(session),
        aggregator=aggregator,
        pricing=pricing,
        publisher=publisher,
    )


def _get_quota_guard(
    aggregator: Annotated[Aggregator, Depends(_get_aggregator)],
    accounts: Annotated[AccountService, Depends(_get_account_service)],
    pricing: Annotated[PricingTable, Depends(_get_pricing)],
) -> QuotaGuardService:
    return QuotaGuardService(aggregator=aggregator, accounts=accounts, pricing=pricing)


def _parse_month(month: str) -> date:
    try:
        year, number = (int(part) for part in month.split("-"))
        return date(year, number, 1)
    except ValueError:
        raise InvalidEventError(f"Billing month must be YYYY-MM, got {month!r}") from None


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


@router.post("/usage", response_model=UsageEventResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    body: RecordUsageRequest,
    tenant_id: Annotated[str, Depends(_get_tenant_id)],
    service: Annotated[UsageLedgerService, Depends(_get_ledger_service)],
) -> UsageEventResponse:
    """Record one billable action; the summary is updated in the same transaction."""
    usage_event = await service.record(
        tenant_id=tenant_id,
        kind=body.kind,
        quantity=body.quantity,
        occurred_at=body.occurred_at,
    )
    return UsageEventResponse.model_validate(usage_event)


@router.get("/events", response_model=list[UsageEventResponse])
async def list_usage_events(
    tenant_id: Annotated[str, Depends(_get_tenant_id)],
    service: Annotated[UsageLedgerService, Depends(_get_ledger_service)],
    sync_state: Annotated[str | None, Query(description="pending | in_flight | synced | failed")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[UsageEventResponse]:
    events = await service.list_events(tenant_id, sync_state=sync_state, limit=limit)
    return [UsageEventResponse.model_validate(usage_event) for usage_event in events]


# ---------------------------------------------------------------------------
# Summaries and limits
# ---------------------------------------------------------------------------


@router.get("/summaries/{month}", response_model=MonthlySummaryResponse)
async def get_monthly_summary(
    month: str,
    tenant_id: Annotated[str, Depends(_get_tenant_id)],
    aggregator: Annotated[Aggregator, Depends(_get_aggregator)],
) -> MonthlySummaryResponse:
    """Read the precomputed summary for a YYYY-MM billing month."""
    billing_month = _parse_month(month)
    summary = await aggregator.get_summary(tenant_id, billing_month)
    if summary is None:
        raise NotFoundError(f"No usage recorded for tenant {tenant_id} in {billing_month:%Y-%m}")
    return MonthlySummaryResponse.from_summary(summary)


@router.get("/limits", response_model=LimitsResponse)
async def check_limits(
    tenant_id: Annotated[str, Depends(_get_tenant_id)],
    guard: Annotated[QuotaGuardService, Depends(_get_quota_guard)],
) -> LimitsResponse:
    """Report quota status per kind; never blocks the caller."""
    statuses = await guard.check_limits(tenant_id)
    return LimitsResponse(
        tenant_id=tenant_id,
        billing_month=month_start(utc_now()),
        limits=[LimitStatusResponse.model_validate(limit_status) for limit_status in statuses.values()],
    )


# ---------------------------------------------------------------------------
# Tenant account
# ---------------------------------------------------------------------------


@router.put("/account", response_model=AccountResponse)
async def set_account(
    body: SetAccountRequest,
    tenant_id: Annotated[str, Depends(_get_tenant_id)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
    accounts: Annotated[AccountService, Depends(_get_account_service)],
) -> AccountResponse:
    account = await accounts.set_account(
        session,
        tenant_id=tenant_id,
        tier=body.tier,
        external_customer_ref=body.external_customer_ref,
    )
    return AccountResponse.model_validate(account)


# ---------------------------------------------------------------------------
# Reconciliation and dead letters
# ---------------------------------------------------------------------------


@router.post("/reconcile", response_model=SyncBatchResponse)
async def reconcile(
    reconciler: Annotated[Reconciler, Depends(_get_reconciler)],
    body: SyncBatchRequest | None = None,
) -> SyncBatchResponse:
    """Run one SyncBatch on demand alongside the background pool."""
    result = await reconciler.sync_batch(body.max_n if body else None, worker_id="api")
    return SyncBatchResponse.model_validate(result)


@router.get("/dead-letters", response_model=list[UsageEventResponse])
async def list_dead_letters(
    reconciler: Annotated[Reconciler, Depends(_get_reconciler)],
    tenant_id: Annotated[str | None, Query(description="Restrict to one tenant")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[UsageEventResponse]:
    events = await reconciler.list_dead_letters(tenant_id=tenant_id, limit=limit)
    return [UsageEventResponse.model_validate(usage_event) for usage_event in events]


@router.post("/dead-letters/{event_id}/requeue", response_model=UsageEventResponse)
async def requeue_dead_letter(
    event_id: uuid.UUID,
    reconciler: Annotated[Reconciler, Depends(_get_reconciler)],
) -> UsageEventResponse:
    usage_event = await reconciler.requeue(event_id)
    return UsageEventResponse.model_validate(usage_event)
