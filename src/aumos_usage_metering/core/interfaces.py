"""Abstract interfaces (Protocol classes) for the AumOS usage metering service.

Services depend on these interfaces, not concrete implementations, so
tests can substitute doubles without a database or a billing provider.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from aumos_usage_metering.core.models import MonthlySummary, TenantAccount, UsageEvent
from aumos_usage_metering.core.pricing import TierLimits, UsageKind


@dataclass(frozen=True)
class ProviderReceipt:
    """Acknowledgement from the billing provider for one usage submission.

    Attributes:
        external_ref: Provider-assigned usage record id.
        duplicate: True when the provider recognised the idempotency key
            and returned the original record instead of charging again.
    """

    external_ref: str
    duplicate: bool = False


@runtime_checkable
class IUsageEventRepository(Protocol):
    """Repository interface for the append-only usage ledger."""

    async def add(self, usage_event: UsageEvent) -> UsageEvent:
        """Insert a new ledger entry (flushed, not committed)."""
        ...

    async def get_by_id(self, event_id: uuid.UUID) -> UsageEvent | None:
        """Retrieve a ledger entry by id."""
        ...

    async def list_by_tenant(
        self,
        tenant_id: str,
        sync_state: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """List a tenant's ledger entries, newest first."""
        ...

    async def sum_quantities(self, tenant_id: str, billing_month: date) -> dict[UsageKind, int]:
        """Sum quantities per kind straight from the ledger (diagnostics only)."""
        ...

    async def claim_batch(
        self,
        limit: int,
        now: datetime,
        lease_token: str,
        lease_expires_at: datetime,
        max_attempts: int,
    ) -> list[UsageEvent]:
        """Atomically claim up to limit eligible events for syncing."""
        ...

    async def mark_synced(
        self,
        event_id: uuid.UUID,
        lease_token: str,
        external_ref: str,
        now: datetime,
    ) -> bool:
        """Record a successful sync. Returns False if the lease was lost."""
        ...

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
        """Record a failed sync. Returns False if the lease was lost."""
        ...

    async def renew_lease(
        self,
        event_id: uuid.UUID,
        lease_token: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """Extend an unexpired claim before submitting. Returns False if it lapsed."""
        ...

    async def defer(self, event_id: uuid.UUID, lease_token: str, until: datetime) -> bool:
        """Release a claim without counting an attempt."""
        ...

    async def list_dead_letters(
        self,
        max_attempts: int,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[UsageEvent]:
        """List failed events that exhausted their attempts."""
        ...

    async def requeue(self, event_id: uuid.UUID, max_attempts: int) -> bool:
        """Reset a dead-lettered event to pending."""
        ...


@runtime_checkable
class IMonthlySummaryRepository(Protocol):
    """Repository interface for per-tenant monthly summaries."""

    async def get(self, tenant_id: str, billing_month: date) -> MonthlySummary | None:
        """Read a summary row without touching the ledger."""
        ...

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
        """Create-or-increment the summary in one atomic statement."""
        ...


@runtime_checkable
class ITenantAccountRepository(Protocol):
    """Repository interface for tenant billing accounts."""

    async def get_by_tenant(self, tenant_id: str) -> TenantAccount | None:
        """Get a tenant's account, or None if never configured."""
        ...

    async def list_by_tenants(self, tenant_ids: list[str]) -> list[TenantAccount]:
        """Get accounts for several tenants at once."""
        ...

    async def upsert(
        self,
        tenant_id: str,
        tier: str,
        external_customer_ref: str | None,
    ) -> TenantAccount:
        """Create or update a tenant's account."""
        ...


@runtime_checkable
class IBillingProvider(Protocol):
    """Interface for the external metered-billing provider."""

    async def submit_usage(
        self,
        idempotency_key: str,
        tenant_external_ref: str,
        kind: str,
        quantity: int,
        timestamp: datetime,
    ) -> ProviderReceipt:
        """Report usage; raises TransientSyncError or PermanentSyncError."""
        ...


@runtime_checkable
class IUsageEventPublisher(Protocol):
    """Interface for announcing newly recorded usage events."""

    async def publish_usage_recorded(self, usage_event: UsageEvent) -> None:
        """Publish a usage_recorded notification after commit."""
        ...
