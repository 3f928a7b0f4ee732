"""SQLAlchemy ORM models for the AumOS usage metering service.

All tables use the `met_` prefix and extend TenantModel, which supplies
id (UUID), tenant_id, created_at, and updated_at columns.

Domain model:
  UsageEvent      append-only ledger of billable actions, with sync state
  MonthlySummary  one row per (tenant, billing month), incrementally updated
  TenantAccount   tier and billing-provider customer reference per tenant
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from aumos_usage_metering.core.pricing import UsageKind
from aumos_usage_metering.database import TenantModel

MONEY = Numeric(18, 6)


class SyncState(str, Enum):
    """Reconciliation state of a ledger entry against the billing provider."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite returns them naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(value: datetime) -> date:
    """First day of the UTC month containing value."""
    value = as_utc(value)
    return date(value.year, value.month, 1)


class UsageEvent(TenantModel):
    """One billable action performed by a tenant.

    The id doubles as the idempotency key sent to the billing provider.
    Kind, quantity, unit_cost, total_cost, and occurred_at are frozen at
    insert; only the sync columns are ever updated.

    Table: met_usage_events
    """

    __tablename__ = "met_usage_events"

    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="invitation | sms | ai_query | whatsapp | email",
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_cost: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        comment="Unit cost frozen from the pricing table at record time",
    )
    total_cost: Mapped[Decimal] = mapped_column(
        MONEY,
        nullable=False,
        comment="quantity x unit_cost, computed once",
    )
    pricing_version: Mapped[str] = mapped_column(String(32), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Event time, used for month bucketing",
    )
    billing_month: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        comment="First day of the UTC month containing occurred_at",
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="Ingestion time",
    )

    # Reconciliation with the external billing provider
    sync_state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SyncState.PENDING.value,
        comment="pending | in_flight | synced | failed",
    )
    external_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Provider-assigned usage record id once synced",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Earliest time the reconciler may retry (exponential backoff)",
    )
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dead_lettered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Claim lease held by a reconciler worker while the provider call is in flight
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_met_usage_events_sync_discovery", "sync_state", "recorded_at"),
        Index("ix_met_usage_events_tenant_month_kind", "tenant_id", "billing_month", "kind"),
        CheckConstraint("quantity > 0", name="ck_met_usage_events_quantity_positive"),
        CheckConstraint(
            "sync_state <> 'synced' OR external_ref IS NOT NULL",
            name="ck_met_usage_events_synced_has_ref",
        ),
    )

    @property
    def usage_kind(self) -> UsageKind:
        return UsageKind(self.kind)


IMMUTABLE_EVENT_FIELDS = (
    "tenant_id",
    "kind",
    "quantity",
    "unit_cost",
    "total_cost",
    "occurred_at",
    "billing_month",
)


@event.listens_for(UsageEvent, "before_update")
def _reject_ledger_edits(mapper: object, connection: object, target: UsageEvent) -> None:
    state = inspect(target)
    changed = [name for name in IMMUTABLE_EVENT_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ValueError(f"Usage events are append-only; refusing to modify {', '.join(changed)}")


class MonthlySummary(TenantModel):
    """Running per-kind counts and costs for one tenant and billing month.

    Created at the tenant's first event of the month with the tier limits
    current at that moment; later tier changes apply from the next month.
    A limit of -1 means unlimited.

    Table: met_monthly_summaries
    """

    __tablename__ = "met_monthly_summaries"

    billing_month: Mapped[date] = mapped_column(Date, nullable=False)
    tier: Mapped[str] = mapped_column(String(20), nullable=False, comment="Tier snapshotted at first event")
    pricing_version: Mapped[str] = mapped_column(String(32), nullable=False)
    grace_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invitation_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    invitation_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    invitation_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    invitation_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invitation_first_exceeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    sms_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sms_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    sms_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    sms_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sms_first_exceeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ai_query_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ai_query_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    ai_query_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    ai_query_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_query_first_exceeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    whatsapp_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    whatsapp_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    whatsapp_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    whatsapp_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whatsapp_first_exceeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    email_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    email_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    email_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    email_exceeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_first_exceeded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    total_cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    __table_args__ = (
        UniqueConstraint("tenant_id", "billing_month", name="uq_met_monthly_summaries_tenant_month"),
    )

    def count_for(self, kind: UsageKind) -> int:
        return int(getattr(self, f"{kind.value}_count"))

    def cost_for(self, kind: UsageKind) -> Decimal:
        return Decimal(getattr(self, f"{kind.value}_cost"))

    def limit_for(self, kind: UsageKind) -> int:
        return int(getattr(self, f"{kind.value}_limit"))

    def exceeded_for(self, kind: UsageKind) -> bool:
        return bool(getattr(self, f"{kind.value}_exceeded"))

    def first_exceeded_at_for(self, kind: UsageKind) -> datetime | None:
        value = getattr(self, f"{kind.value}_first_exceeded_at")
        return as_utc(value) if value is not None else None


class TenantAccount(TenantModel):
    """Billing account settings for a tenant.

    Table: met_tenant_accounts
    """

    __tablename__ = "met_tenant_accounts"

    tier: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="free",
        comment="free | starter | professional | enterprise",
    )
    external_customer_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Billing-provider customer id used when submitting usage",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_met_tenant_accounts_tenant"),
    )


__all__ = [
    "IMMUTABLE_EVENT_FIELDS",
    "MonthlySummary",
    "SyncState",
    "TenantAccount",
    "UsageEvent",
    "as_utc",
    "month_start",
    "utc_now",
]
