"""Business logic services for the AumOS usage metering service.

All services depend on repository and adapter interfaces and receive
dependencies via constructor injection. No framework code (FastAPI)
belongs here.

Key invariants:
- UsageLedgerService: an event and its summary increment commit together or not at all.
- Aggregator: summaries change only through one atomic upsert per event.
- QuotaGuardService: pure reads of the summary table; reports, never blocks.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aumos_usage_metering.core.interfaces import (
    IMonthlySummaryRepository,
    ITenantAccountRepository,
    IUsageEventPublisher,
    IUsageEventRepository,
)
from aumos_usage_metering.core.models import (
    MonthlySummary,
    SyncState,
    TenantAccount,
    UsageEvent,
    as_utc,
    month_start,
    utc_now,
)
from aumos_usage_metering.core.pricing import (
    PricingTable,
    Tier,
    TierLimits,
    UsageKind,
    compute_total_cost,
    overage_units,
)
from aumos_usage_metering.errors import InvalidEventError, StorageFailureError
from aumos_usage_metering.settings import Settings

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


class AccountService:
    """Resolve and update tenant tiers and billing-provider customer refs."""

    def __init__(
        self,
        account_repo: ITenantAccountRepository,
        settings: Settings,
    ) -> None:
        self._account_repo = account_repo
        self._settings = settings

    async def resolve_tier(self, tenant_id: str) -> Tier:
        """Current tier of a tenant; settings.default_tier when no account exists."""
        account = await self._account_repo.get_by_tenant(tenant_id)
        if account is None:
            return Tier.parse(self._settings.default_tier)
        return Tier.parse(account.tier)

    async def set_account(
        self,
        session: AsyncSession,
        tenant_id: str,
        tier: str,
        external_customer_ref: str | None = None,
    ) -> TenantAccount:
        """Create or update a tenant's account and commit.

        A tier change affects only billing months that have not started
        yet for this tenant; existing summaries keep their snapshot.

        Raises:
            InvalidEventError: If the tier is unknown.
        """
        parsed = Tier.parse(tier)
        account = await self._account_repo.upsert(
            tenant_id=tenant_id,
            tier=parsed.value,
            external_customer_ref=external_customer_ref,
        )
        await session.commit()
        logger.info(
            "tenant_account_updated",
            tenant_id=tenant_id,
            tier=parsed.value,
            linked=account.external_customer_ref is not None,
        )
        return account


class Aggregator:
    """Maintain one MonthlySummary per (tenant, billing month)."""

    def __init__(
        self,
        summary_repo: IMonthlySummaryRepository,
        accounts: AccountService,
        pricing: PricingTable,
        clock: Clock = utc_now,
    ) -> None:
        self._summary_repo = summary_repo
        self._accounts = accounts
        self._pricing = pricing
        self._clock = clock

    async def apply(self, usage_event: UsageEvent) -> MonthlySummary:
        """Fold one ledger event into its monthly summary.

        Runs inside the caller's transaction. The summary is seeded with the
        tenant's current tier limits only when this is the month's first
        event; otherwise the counters are incremented in place.

        Args:
            usage_event: The freshly inserted ledger entry.

        Returns:
            The summary after the increment.
        """
        kind = UsageKind(usage_event.kind)
        tier = await self._accounts.resolve_tier(usage_event.tenant_id)
        now = self._clock()
        summary = await self._summary_repo.apply_increment(
            tenant_id=usage_event.tenant_id,
            billing_month=usage_event.billing_month,
            kind=kind,
            quantity=usage_event.quantity,
            cost=usage_event.total_cost,
            limits=self._pricing.limits_for(tier),
            pricing_version=self._pricing.version,
            now=now,
        )

        first_exceeded = summary.first_exceeded_at_for(kind)
        if first_exceeded is not None and first_exceeded == as_utc(now):
            logger.warning(
                "usage_quota_exceeded",
                tenant_id=usage_event.tenant_id,
                billing_month=usage_event.billing_month.isoformat(),
                kind=kind.value,
                count=summary.count_for(kind),
                limit=summary.limit_for(kind),
            )
        return summary

    async def get_summary(self, tenant_id: str, billing_month: date) -> MonthlySummary | None:
        """Read the summary row. Never recomputes from the ledger."""
        return await self._summary_repo.get(tenant_id, billing_month)


class UsageLedgerService:
    """Record billable usage into the authoritative local ledger.

    Args:
        session: Session whose transaction spans the insert and the summary increment.
        event_repo: Ledger repository.
        aggregator: Summary maintainer, applied in the same transaction.
        pricing: Pricing table current at call time.
        publisher: Optional post-commit notifier; its failures never fail a record.
        clock: Source of the current time (UTC).
    """

    def __init__(
        self,
        session: AsyncSession,
        event_repo: IUsageEventRepository,
        aggregator: Aggregator,
        pricing: PricingTable,
        publisher: IUsageEventPublisher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._session = session
        self._event_repo = event_repo
        self._aggregator = aggregator
        self._pricing = pricing
        self._publisher = publisher
        self._clock = clock

    async def record(
        self,
        tenant_id: str,
        kind: str | UsageKind,
        quantity: int = 1,
        occurred_at: datetime | None = None,
    ) -> UsageEvent:
        """Record one billable action.

        The unit cost is looked up now and frozen on the row. The ledger
        insert and the summary increment commit in one transaction.

        Args:
            tenant_id: Tenant performing the action.
            kind: invitation | sms | ai_query | whatsapp | email
            quantity: Positive number of units.
            occurred_at: Event time for month bucketing (defaults to now, naive = UTC).

        Returns:
            The persisted UsageEvent in the pending sync state.

        Raises:
            InvalidEventError: Unknown kind, non-positive quantity, or missing tenant.
            StorageFailureError: The local write failed; nothing was persisted.
        """
        usage_kind = UsageKind.parse(kind)
        if not tenant_id:
            raise InvalidEventError("tenant_id is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidEventError(f"quantity must be a positive integer, got {quantity!r}")

        now = self._clock()
        occurred = as_utc(occurred_at) if occurred_at is not None else now
        unit_cost = self._pricing.cost_of(usage_kind)

        usage_event = UsageEvent(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            kind=usage_kind.value,
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=compute_total_cost(unit_cost, quantity),
            pricing_version=self._pricing.version,
            occurred_at=occurred,
            billing_month=month_start(occurred),
            recorded_at=now,
            sync_state=SyncState.PENDING.value,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )

        try:
            await self._event_repo.add(usage_event)
            await self._aggregator.apply(usage_event)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error(
                "usage_record_storage_failure",
                tenant_id=tenant_id,
                kind=usage_kind.value,
                quantity=quantity,
                error=str(exc),
            )
            raise StorageFailureError(f"Failed to persist usage event: {exc}") from exc
        except Exception:
            await self._session.rollback()
            raise

        logger.info(
            "usage_event_recorded",
            event_id=str(usage_event.id),
            tenant_id=tenant_id,
            kind=usage_kind.value,
            quantity=quantity,
            total_cost=str(usage_event.total_cost),
        )

        if self._publisher is not None:
            try:
                await self._publisher.publish_usage_recorded(usage_event)
            except Exception as exc:
                logger.warning(
                    "usage_event_publish_failed",
                    event_id=str(usage_event.id),
                    error=str(exc),
                )

        return usage_event

    async def list_events(
        self,
        tenant_id: str,
        sync_state: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """List a tenant's recent ledger entries, optionally by sync state."""
        if sync_state is not None and sync_state not in {state.value for state in SyncState}:
            raise InvalidEventError(f"Unknown sync state: {sync_state!r}")
        return await self._event_repo.list_by_tenant(tenant_id, sync_state=sync_state, limit=limit)

    async def verify_summary(self, tenant_id: str, billing_month: date) -> list[UsageKind]:
        """Compare ledger sums with the summary row for one month.

        Diagnostic only: scans the ledger, so it never serves dashboards.

        Returns:
            Kinds whose summary count differs from the ledger total (empty when consistent).
        """
        ledger_totals = await self._event_repo.sum_quantities(tenant_id, billing_month)
        summary = await self._aggregator.get_summary(tenant_id, billing_month)
        mismatched = [
            kind
            for kind, total in ledger_totals.items()
            if (summary.count_for(kind) if summary is not None else 0) != total
        ]
        if mismatched:
            logger.error(
                "usage_summary_mismatch",
                tenant_id=tenant_id,
                billing_month=billing_month.isoformat(),
                kinds=[kind.value for kind in mismatched],
            )
        return mismatched


@dataclass(frozen=True)
class LimitStatus:
    """Quota position of one usage kind for the current month.

    Attributes:
        kind: Usage kind.
        current: Units used this month.
        limit: Monthly quota (-1 = unlimited).
        exceeded: current > limit (never for unlimited).
        first_exceeded_at: When the quota was first exceeded this month.
        days_since_first_exceed: Whole days since first_exceeded_at.
        grace_period_days: Grace period of the month's tier snapshot.
        in_grace_period: Exceeded, but still inside the grace window.
        overage_units: Units beyond the quota.
        overage_cost: overage_units x the tier's overage rate.
    """

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


class QuotaGuardService:
    """Answer "has tenant X exceeded limit Y this month".

    Stateless, read-only. Callers decide whether to warn or soft-block;
    the guard only reports fact.
    """

    def __init__(
        self,
        aggregator: Aggregator,
        accounts: AccountService,
        pricing: PricingTable,
        clock: Clock = utc_now,
    ) -> None:
        self._aggregator = aggregator
        self._accounts = accounts
        self._pricing = pricing
        self._clock = clock

    async def check_limits(self, tenant_id: str) -> dict[UsageKind, LimitStatus]:
        """Report current-month usage against quota for every kind.

        Months without any events report zero usage against the tenant's
        current tier.
        """
        now = self._clock()
        summary = await self._aggregator.get_summary(tenant_id, month_start(now))
        # Overage rates always come from the tier the month was snapshotted under
        tier = Tier.parse(summary.tier) if summary is not None else await self._accounts.resolve_tier(tenant_id)
        limits = self._pricing.limits_for(tier)

        return {kind: self._status(kind, summary, limits, now) for kind in UsageKind}

    async def is_exceeded(self, tenant_id: str, kind: str | UsageKind) -> bool:
        """Raw exceeded flag for one kind this month."""
        usage_kind = UsageKind.parse(kind)
        summary = await self._aggregator.get_summary(tenant_id, month_start(self._clock()))
        return summary is not None and summary.exceeded_for(usage_kind)

    @staticmethod
    def _status(
        kind: UsageKind,
        summary: MonthlySummary | None,
        limits: TierLimits,
        now: datetime,
    ) -> LimitStatus:
        if summary is None:
            return LimitStatus(
                kind=kind,
                current=0,
                limit=limits.quota_for(kind),
                exceeded=False,
                first_exceeded_at=None,
                days_since_first_exceed=None,
                grace_period_days=limits.grace_period_days,
                in_grace_period=False,
                overage_units=0,
                overage_cost=Decimal("0"),
            )

        current = summary.count_for(kind)
        limit = summary.limit_for(kind)
        exceeded = summary.exceeded_for(kind)
        first_exceeded_at = summary.first_exceeded_at_for(kind)
        days_since = (as_utc(now) - first_exceeded_at).days if first_exceeded_at is not None else None
        units = overage_units(current, limit)
        return LimitStatus(
            kind=kind,
            current=current,
            limit=limit,
            exceeded=exceeded,
            first_exceeded_at=first_exceeded_at,
            days_since_first_exceed=days_since,
            grace_period_days=summary.grace_period_days,
            in_grace_period=exceeded and days_since is not None and days_since < summary.grace_period_days,
            overage_units=units,
            overage_cost=limits.overage_rate_for(kind) * units,
        )


__all__ = [
    "AccountService",
    "Aggregator",
    "LimitStatus",
    "QuotaGuardService",
    "UsageLedgerService",
]
