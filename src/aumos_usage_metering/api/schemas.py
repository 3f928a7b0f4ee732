"""Pydantic request and response schemas for the AumOS usage metering API.

All API inputs and outputs are typed Pydantic models, never raw dicts.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from aumos_usage_metering.core.models import MonthlySummary
from aumos_usage_metering.core.pricing import UsageKind


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class RecordUsageRequest(BaseModel):
    """Request body for POST /metering/usage."""

    kind: str = Field(description="invitation | sms | ai_query | whatsapp | email")
    quantity: int = Field(default=1, description="Positive number of units")
    occurred_at: datetime | None = Field(
        default=None,
        description="Event time used for month bucketing (defaults to now, UTC)",
    )


class UsageEventResponse(BaseModel):
    """Response schema for a single ledger entry."""

    id: uuid.UUID
    tenant_id: str
    kind: str
    quantity: int
    unit_cost: Decimal
    total_cost: Decimal
    pricing_version: str
    occurred_at: datetime
    billing_month: date
    recorded_at: datetime
    sync_state: str
    external_ref: str | None
    last_error: str | None
    attempt_count: int
    next_attempt_at: datetime | None
    synced_at: datetime | None
    dead_lettered_at: datetime | None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Monthly summaries
# ---------------------------------------------------------------------------


class KindUsageResponse(BaseModel):
    """Running count and cost of one usage kind within a month."""

    kind: UsageKind
    count: int
    cost: Decimal
    limit: int = Field(description="Monthly quota snapshotted at first event (-1 = unlimited)")
    exceeded: bool
    first_exceeded_at: datetime | None


class MonthlySummaryResponse(BaseModel):
    """Response schema for GET /metering/summaries/{month}."""

    tenant_id: str
    billing_month: date
    tier: str
    pricing_version: str
    grace_period_days: int
    kinds: list[KindUsageResponse]
    total_cost: Decimal
    updated_at: datetime

    @classmethod
    def from_summary(cls, summary: MonthlySummary) -> "MonthlySummaryResponse":
        return cls(
            tenant_id=summary.tenant_id,
            billing_month=summary.billing_month,
            tier=summary.tier,
            pricing_version=summary.pricing_version,
            grace_period_days=summary.grace_period_days,
            kinds=[
                KindUsageResponse(
                    kind=kind,
                    count=summary.count_for(kind),
                    cost=summary.cost_for(kind),
                    limit=summary.limit_for(kind),
                    exceeded=summary.exceeded_for(kind),
                    first_exceeded_at=summary.first_exceeded_at_for(kind),
                )
                for kind in UsageKind
            ],
            total_cost=summary.total_cost,
            updated_at=summary.updated_at,
        )


# ---------------------------------------------------------------------------
# Quota guard
# ---------------------------------------------------------------------------


class LimitStatusResponse(BaseModel):
    """Quota position of one usage kind for the current month."""

    kind: UsageKind
    current: int
    limit: int
    exceeded: bool
    first_exceeded_at: datetime | None
    days_since_first_exceed: int | None
    grace_period_days: int
    in_grace_period: bool
    overage_units: int
    overage_cost: Decimal

    model_config = {"from_attributes": True}


class LimitsResponse(BaseModel):
    """Response schema for GET /metering/limits."""

    tenant_id: str
    billing_month: date
    limits: list[LimitStatusResponse]


# ---------------------------------------------------------------------------
# Tenant accounts
# ---------------------------------------------------------------------------


class SetAccountRequest(BaseModel):
    """Request body for PUT /metering/account."""

    tier: str = Field(description="free | starter | professional | enterprise")
    external_customer_ref: str | None = Field(
        default=None,
        max_length=255,
        description="Billing-provider customer id (omit to keep the current one)",
    )


class AccountResponse(BaseModel):
    """Response schema for a tenant account."""

    tenant_id: str
    tier: str
    external_customer_ref: str | None
    updated_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class SyncBatchRequest(BaseModel):
    """Request body for POST /metering/reconcile."""

    max_n: int | None = Field(default=None, ge=1, le=1000, description="Batch size override")


class SyncBatchResponse(BaseModel):
    """Outcome counts of one reconciliation batch."""

    claimed: int
    synced: int
    failed: int
    dead_lettered: int
    deferred: int

    model_config = {"from_attributes": True}
