"""SQLAlchemy repositories for the AumOS usage metering service.

All repositories implement the interfaces defined in core/interfaces.py
and operate on the caller's AsyncSession. They flush but never commit;
transaction boundaries belong to the services.
"""

import uuid
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import and_, case, func, literal, null, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import DateTime

from aumos_usage_metering.core.models import MonthlySummary, SyncState, TenantAccount, UsageEvent
from aumos_usage_metering.core.pricing import UNLIMITED, TierLimits, UsageKind, is_exceeded

logger = structlog.get_logger(__name__)

_RETRYABLE_STATES = (SyncState.PENDING.value, SyncState.FAILED.value)


class UsageEventRepository:
    """Repository for met_usage_events, the append-only usage ledger."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        self._session = session

    async def add(self, usage_event: UsageEvent) -> UsageEvent:
        self._session.add(usage_event)
        await self._session.flush()
        return usage_event

    async def get_by_id(self, event_id: uuid.UUID) -> UsageEvent | None:
        return await self._session.get(UsageEvent, event_id)

    async def list_by_tenant(
        self,
        tenant_id: str,
        sync_state: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """List a tenant's ledger entries.

        Args:
            tenant_id: Tenant filter.
            sync_state: Optional filter: pending | in_flight | synced | failed
            limit: Maximum number of rows.

        Returns:
            UsageEvent rows ordered by recorded_at descending.
        """
        query = (
            select(UsageEvent)
            .where(UsageEvent.tenant_id == tenant_id)
            .order_by(UsageEvent.recorded_at.desc())
            .limit(limit)
        )
        if sync_state is not None:
            query = query.where(UsageEvent.sync_state == sync_state)

        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def sum_quantities(self, tenant_id: str, billing_month: date) -> dict[UsageKind, int]:
        """Sum ledger quantities per kind for one tenant and month.

        O(events); used only by the consistency check, never by dashboards.
        """
        query = (
            select(UsageEvent.kind, func.coalesce(func.sum(UsageEvent.quantity), 0))
            .where(
                UsageEvent.tenant_id == tenant_id,
                UsageEvent.billing_month == billing_month,
            )
            .group_by(UsageEvent.kind)
        )
        result = await self._session.execute(query)
        totals = {kind: 0 for kind in UsageKind}
        for kind, total in result.all():
            totals[UsageKind(kind)] = int(total)
        return totals

    @staticmethod
    def _eligible(now: datetime, max_attempts: int) -> ColumnElement[bool]:
        """Rows a worker may claim: retryable and due, or holding an expired lease."""
        return and_(
            UsageEvent.attempt_count < max_attempts,
            or_(
                and_(
                    UsageEvent.sync_state.in_(_RETRYABLE_STATES),
                    or_(UsageEvent.next_attempt_at.is_(None), UsageEvent.next_attempt_at <= now),
                ),
                and_(
                    UsageEvent.sync_state == SyncState.IN_FLIGHT.value,
                    UsageEvent.lease_expires_at <= now,
                ),
            ),
        )

    async def claim_batch(
        self,
        limit: int,
        now: datetime,
        lease_token: str,
        lease_expires_at: datetime,
        max_attempts: int,
    ) -> list[UsageEvent]:
        """Claim up to limit eligible events, oldest first.

        Uses SKIP LOCKED where the engine supports it. The eligibility
        predicate is repeated on the outer UPDATE so two workers can never
        both claim a row, even where row locks are unavailable.

        Args:
            limit: Maximum number of events to claim.
            now: Current time (UTC).
            lease_token: Token identifying this claim.
            lease_expires_at: When the claim lapses if never completed.
            max_attempts: Events at or above this attempt count are not claimed.

        Returns:
            The claimed events, now in the in_flight state.
        """
        eligible = self._eligible(now, max_attempts)
        candidates = (
            select(UsageEvent.id)
            .where(eligible)
            .order_by(UsageEvent.recorded_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id.in_(candidates.scalar_subquery()), eligible)
            .values(
                sync_state=SyncState.IN_FLIGHT.value,
                lease_token=lease_token,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .returning(UsageEvent)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        claimed = sorted(result.scalars().all(), key=lambda row: row.recorded_at)
        logger.debug("usage_events_claimed", lease_token=lease_token, claimed=len(claimed))
        return claimed

    async def mark_synced(
        self,
        event_id: uuid.UUID,
        lease_token: str,
        external_ref: str,
        now: datetime,
    ) -> bool:
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id == event_id, UsageEvent.lease_token == lease_token)
            .values(
                sync_state=SyncState.SYNCED.value,
                external_ref=external_ref,
                synced_at=now,
                last_attempt_at=now,
                next_attempt_at=None,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_failed(
        self,
        event_id: uuid.UUID,
        lease_token: str,
        error: str,
        attempt_count: int,
        next_attempt_at: datetime | None,
        dead_lettered_at: datetime | None,
        now: datetime,
    ) -> bool:
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id == event_id, UsageEvent.lease_token == lease_token)
            .values(
                sync_state=SyncState.FAILED.value,
                last_error=error,
                attempt_count=attempt_count,
                next_attempt_at=next_attempt_at,
                dead_lettered_at=dead_lettered_at,
                last_attempt_at=now,
                lease_token=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def renew_lease(
        self,
        event_id: uuid.UUID,
        lease_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """Extend a still-valid claim. Returns False once the lease has lapsed or moved."""
        stmt = (
            update(UsageEvent)
            .where(
                UsageEvent.id == event_id,
                UsageEvent.lease_token == lease_token,
                UsageEvent.sync_state == SyncState.IN_FLIGHT.value,
                UsageEvent.lease_expires_at > now,
            )
            .values(lease_expires_at=lease_expires_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def defer(self, event_id: uuid.UUID, lease_token: str, until: datetime) -> bool:
        """Return a claimed event to pending without counting an attempt."""
        stmt = (
            update(UsageEvent)
            .where(
                UsageEvent.id == event_id,
                UsageEvent.lease_token == lease_token,
                # Only never-attempted events go back to pending; failed ones keep their state
                UsageEvent.sync_state == SyncState.IN_FLIGHT.value,
            )
            .values(
                sync_state=case(
                    (UsageEvent.attempt_count > 0, SyncState.FAILED.value),
                    else_=SyncState.PENDING.value,
                ),
                next_attempt_at=until,
                lease_token=None,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def list_dead_letters(
        self,
        max_attempts: int,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """List events that need manual intervention.

        Returns:
            Failed events with attempt_count >= max_attempts, most recent failure first.
        """
        query = (
            select(UsageEvent)
            .where(
                UsageEvent.sync_state == SyncState.FAILED.value,
                UsageEvent.attempt_count >= max_attempts,
            )
            .order_by(UsageEvent.last_attempt_at.desc())
            .limit(limit)
        )
        if tenant_id is not None:
            query = query.where(UsageEvent.tenant_id == tenant_id)

        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def requeue(self, event_id: uuid.UUID, max_attempts: int) -> bool:
        """Reset a dead-lettered event to pending. last_error is kept for audit."""
        stmt = (
            update(UsageEvent)
            .where(
                UsageEvent.id == event_id,
                UsageEvent.sync_state == SyncState.FAILED.value,
                UsageEvent.attempt_count >= max_attempts,
            )
            .values(
                sync_state=SyncState.PENDING.value,
                attempt_count=0,
                next_attempt_at=None,
                dead_lettered_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class MonthlySummaryRepository:
    """Repository for met_monthly_summaries, per-tenant monthly aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        self._session = session

    async def get(self, tenant_id: str, billing_month: date) -> MonthlySummary | None:
        query = select(MonthlySummary).where(
            MonthlySummary.tenant_id == tenant_id,
            MonthlySummary.billing_month == billing_month,
        )
        result = await self._session.execute(query)
        return result.scalars().first()

    def _insert(self) -> Callable[..., Any]:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Atomic summary upsert is not implemented for dialect {dialect!r}")

    async def apply_increment(
        self,
        tenant_id: str,
        billing_month: date,
        kind: UsageKind,
        quantity: int,
        cost: Decimal,
        limits: TierLimits,
        pricing_version: str,
        now: datetime,
    ) -> MonthlySummary:
        """Create-or-increment the (tenant, month) summary in one statement.

        INSERT seeds the row with the tier limits current right now; ON
        CONFLICT adds to the existing counters in the database, so
        concurrent writers never lose an increment and later tier changes
        never rewrite an existing month's limits.

        Cost columns are Numeric(18, 6). PostgreSQL adds them exactly;
        SQLite adds them as REAL and the result is rounded back to six
        places on read, so exact cost totals at scale need PostgreSQL.

        Args:
            tenant_id: Owning tenant.
            billing_month: First day of the billing month.
            kind: Usage kind being incremented.
            quantity: Units to add.
            cost: Cost to add.
            limits: Tier limits to snapshot if the row is created.
            pricing_version: Pricing version to snapshot if the row is created.
            now: Current time (UTC), stamped as first_exceeded_at on a crossing.

        Returns:
            The summary row as it stands after the increment.
        """
        values: dict[str, object] = {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "billing_month": billing_month,
            "tier": limits.tier.value,
            "pricing_version": pricing_version,
            "grace_period_days": limits.grace_period_days,
            "total_cost": cost,
            "created_at": now,
            "updated_at": now,
        }
        for each in UsageKind:
            limit = limits.quota_for(each)
            count = quantity if each is kind else 0
            exceeded = is_exceeded(count, limit)
            values[f"{each.value}_count"] = count
            values[f"{each.value}_cost"] = cost if each is kind else Decimal("0")
            values[f"{each.value}_limit"] = limit
            values[f"{each.value}_exceeded"] = exceeded
            values[f"{each.value}_first_exceeded_at"] = now if exceeded else None

        stmt = self._insert()(MonthlySummary).values(**values)
        columns = MonthlySummary.__table__.c
        name = kind.value
        count_col = columns[f"{name}_count"]
        limit_col = columns[f"{name}_limit"]
        first_col = columns[f"{name}_first_exceeded_at"]
        new_count = count_col + stmt.excluded[f"{name}_count"]
        crossed = and_(limit_col != UNLIMITED, new_count > limit_col)

        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "billing_month"],
            set_={
                f"{name}_count": new_count,
                f"{name}_cost": columns[f"{name}_cost"] + stmt.excluded[f"{name}_cost"],
                f"{name}_exceeded": crossed,
                f"{name}_first_exceeded_at": case(
                    (first_col.is_not(None), first_col),
                    (crossed, literal(now, DateTime(timezone=True))),
                    else_=null(),
                ),
                "total_cost": columns["total_cost"] + stmt.excluded["total_cost"],
                "updated_at": now,
            },
        ).returning(MonthlySummary)

        result = await self._session.execute(
            stmt,
            execution_options={"populate_existing": True},
        )
        return result.scalars().one()


class TenantAccountRepository:
    """Repository for met_tenant_accounts: tier and provider customer refs."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        self._session = session

    async def get_by_tenant(self, tenant_id: str) -> TenantAccount | None:
        query = select(TenantAccount).where(TenantAccount.tenant_id == tenant_id)
        result = await self._session.execute(query)
        return result.scalars().first()

    async def list_by_tenants(self, tenant_ids: list[str]) -> list[TenantAccount]:
        if not tenant_ids:
            return []
        query = select(TenantAccount).where(TenantAccount.tenant_id.in_(tenant_ids))
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def upsert(
        self,
        tenant_id: str,
        tier: str,
        external_customer_ref: str | None,
    ) -> TenantAccount:
        """Create or update a tenant's account.

        Args:
            tenant_id: Owning tenant.
            tier: free | starter | professional | enterprise
            external_customer_ref: Billing-provider customer id (None keeps the current one).

        Returns:
            The flushed TenantAccount.
        """
        account = await self.get_by_tenant(tenant_id)
        if account is None:
            account = TenantAccount(
                tenant_id=tenant_id,
                tier=tier,
                external_customer_ref=external_customer_ref,
            )
            self._session.add(account)
        else:
            account.tier = tier
            if external_customer_ref is not None:
                account.external_customer_ref = external_customer_ref
        await self._session.flush()
        return account
