"""Reconciler: pushes ledger entries to the external billing provider.

The local ledger stays authoritative. The reconciler only mirrors it
into the provider for invoicing, so nothing here ever touches counts,
costs, or summaries.

Each batch:
  1. claims eligible events (pending/failed and due, or with an expired
     lease) in one statement, stamping a lease token and expiry;
  2. renews the lease on each event just before submitting it, skipping
     events whose lease already lapsed, then submits with the event id as
     the idempotency key;
  3. writes the outcome back, fenced on the lease token so a worker that
     lost its lease cannot overwrite a newer claim.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aumos_usage_metering.core.interfaces import (
    IBillingProvider,
    ITenantAccountRepository,
    IUsageEventRepository,
    ProviderReceipt,
)
from aumos_usage_metering.core.models import UsageEvent, as_utc, utc_now
from aumos_usage_metering.errors import (
    InvalidEventError,
    NotFoundError,
    PermanentSyncError,
    TransientSyncError,
)
from aumos_usage_metering.settings import Settings

logger = structlog.get_logger(__name__)

EventRepositoryFactory = Callable[[AsyncSession], IUsageEventRepository]
AccountRepositoryFactory = Callable[[AsyncSession], ITenantAccountRepository]


@dataclass
class SyncBatchResult:
    """Outcome counts for one SyncBatch run."""

    claimed: int = 0
    synced: int = 0
    failed: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    lease_lost: int = 0


class Reconciler:
    """Claims, submits, and settles usage events against the billing provider.

    Every database step runs in its own short transaction so no row lock
    or connection is held across the outbound HTTP call.

    Args:
        session_factory: Factory for independent sessions.
        provider: Billing provider client.
        settings: Reconciler and provider settings.
        event_repo_factory: Builds a ledger repository for a session.
        account_repo_factory: Builds a tenant account repository for a session.
        clock: Source of the current time (UTC).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: IBillingProvider,
        settings: Settings,
        event_repo_factory: EventRepositoryFactory,
        account_repo_factory: AccountRepositoryFactory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._settings = settings
        self._event_repo_factory = event_repo_factory
        self._account_repo_factory = account_repo_factory
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._settings.reconciler_max_attempts

    def backoff_delay(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt: base * 2^attempt_count, capped."""
        base = self._settings.reconciler_backoff_base_seconds
        cap = self._settings.reconciler_backoff_cap_seconds
        # Bound the exponent so huge attempt counts cannot overflow the float
        seconds = min(base * (2 ** min(attempt_count, 32)), cap)
        return timedelta(seconds=seconds)

    async def sync_batch(self, max_n: int | None = None, worker_id: str = "reconciler") -> SyncBatchResult:
        """Claim and submit up to max_n events, oldest first.

        Sync failures are recorded on the events and never raised.

        Args:
            max_n: Batch size (defaults to settings.reconciler_batch_size).
            worker_id: Prefix of this claim's lease token, for tracing.

        Returns:
            SyncBatchResult with per-outcome counts.
        """
        limit = max_n if max_n is not None else self._settings.reconciler_batch_size
        result = SyncBatchResult()
        if limit <= 0:
            return result

        now = self._clock()
        lease_token = f"{worker_id}:{uuid.uuid4().hex}"
        lease_expires_at = now + timedelta(seconds=self._settings.reconciler_lease_seconds)

        async with self._session_factory() as session:
            claimed = await self._event_repo_factory(session).claim_batch(
                limit=limit,
                now=now,
                lease_token=lease_token,
                lease_expires_at=lease_expires_at,
                max_attempts=self.max_attempts,
            )
            customer_refs: dict[str, str] = {}
            if claimed:
                accounts = await self._account_repo_factory(session).list_by_tenants(
                    sorted({usage_event.tenant_id for usage_event in claimed})
                )
                customer_refs = {
                    account.tenant_id: account.external_customer_ref
                    for account in accounts
                    if account.external_customer_ref
                }
            await session.commit()

        result.claimed = len(claimed)
        for usage_event in claimed:
            await self._sync_one(usage_event, lease_token, customer_refs.get(usage_event.tenant_id), result)

        if result.claimed:
            logger.info(
                "usage_sync_batch_completed",
                worker_id=worker_id,
                claimed=result.claimed,
                synced=result.synced,
                failed=result.failed,
                dead_lettered=result.dead_lettered,
                deferred=result.deferred,
                lease_lost=result.lease_lost,
            )
        return result

    async def _sync_one(
        self,
        usage_event: UsageEvent,
        lease_token: str,
        customer_ref: str | None,
        result: SyncBatchResult,
    ) -> None:
        if customer_ref is None:
            until = self._clock() + timedelta(seconds=self._settings.reconciler_backoff_base_seconds)
            if await self._settle(lambda repo: repo.defer(usage_event.id, lease_token, until), usage_event):
                result.deferred += 1
                logger.debug(
                    "usage_sync_deferred_unlinked_tenant",
                    event_id=str(usage_event.id),
                    tenant_id=usage_event.tenant_id,
                )
            return

        # Events late in a slow batch may have been re-claimed by another worker
        renewed_at = self._clock()
        lease = timedelta(seconds=self._settings.reconciler_lease_seconds)
        if not await self._settle(
            lambda repo: repo.renew_lease(usage_event.id, lease_token, renewed_at, renewed_at + lease),
            usage_event,
        ):
            result.lease_lost += 1
            return

        try:
            receipt: ProviderReceipt = await asyncio.wait_for(
                self._provider.submit_usage(
                    idempotency_key=str(usage_event.id),
                    tenant_external_ref=customer_ref,
                    kind=usage_event.kind,
                    quantity=usage_event.quantity,
                    timestamp=as_utc(usage_event.occurred_at),
                ),
                timeout=self._settings.provider_timeout_seconds,
            )
        except PermanentSyncError as exc:
            await self._record_permanent_failure(usage_event, lease_token, exc, result)
            return
        except TransientSyncError as exc:
            await self._record_transient_failure(usage_event, lease_token, exc.message, result)
            return
        except asyncio.TimeoutError:
            await self._record_transient_failure(
                usage_event,
                lease_token,
                f"Billing provider call exceeded {self._settings.provider_timeout_seconds}s",
                result,
            )
            return
        except Exception as exc:
            logger.exception("usage_sync_unexpected_error", event_id=str(usage_event.id))
            await self._record_transient_failure(usage_event, lease_token, f"Unexpected error: {exc!r}", result)
            return

        now = self._clock()
        if await self._settle(
            lambda repo: repo.mark_synced(usage_event.id, lease_token, receipt.external_ref, now),
            usage_event,
        ):
            result.synced += 1
            logger.info(
                "usage_event_synced",
                event_id=str(usage_event.id),
                tenant_id=usage_event.tenant_id,
                external_ref=receipt.external_ref,
                duplicate=receipt.duplicate,
            )

    async def _record_transient_failure(
        self,
        usage_event: UsageEvent,
        lease_token: str,
        error: str,
        result: SyncBatchResult,
    ) -> None:
        now = self._clock()
        attempt_count = usage_event.attempt_count + 1
        exhausted = attempt_count >= self.max_attempts
        next_attempt_at = None if exhausted else now + self.backoff_delay(attempt_count)

        settled = await self._settle(
            lambda repo: repo.mark_failed(
                usage_event.id,
                lease_token,
                error=error,
                attempt_count=attempt_count,
                next_attempt_at=next_attempt_at,
                dead_lettered_at=now if exhausted else None,
                now=now,
            ),
            usage_event,
        )
        if not settled:
            return

        result.failed += 1
        if exhausted:
            result.dead_lettered += 1
            logger.error(
                "usage_sync_dead_lettered",
                event_id=str(usage_event.id),
                tenant_id=usage_event.tenant_id,
                attempt_count=attempt_count,
                error=error,
            )
        else:
            logger.warning(
                "usage_sync_failed",
                event_id=str(usage_event.id),
                tenant_id=usage_event.tenant_id,
                attempt_count=attempt_count,
                next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
                error=error,
            )

    async def _record_permanent_failure(
        self,
        usage_event: UsageEvent,
        lease_token: str,
        exc: PermanentSyncError,
        result: SyncBatchResult,
    ) -> None:
        now = self._clock()
        settled = await self._settle(
            lambda repo: repo.mark_failed(
                usage_event.id,
                lease_token,
                error=exc.message,
                attempt_count=self.max_attempts,
                next_attempt_at=None,
                dead_lettered_at=now,
                now=now,
            ),
            usage_event,
        )
        if settled:
            result.failed += 1
            result.dead_lettered += 1
            logger.error(
                "usage_sync_rejected",
                event_id=str(usage_event.id),
                tenant_id=usage_event.tenant_id,
                status_code=exc.status_code,
                error=exc.message,
            )

    async def _settle(
        self,
        update: Callable[[IUsageEventRepository], Awaitable[bool]],
        usage_event: UsageEvent,
    ) -> bool:
        """Apply one lease-fenced result update in its own transaction."""
        async with self._session_factory() as session:
            applied = await update(self._event_repo_factory(session))
            await session.commit()
        if not applied:
            logger.warning(
                "usage_sync_lease_lost",
                event_id=str(usage_event.id),
                tenant_id=usage_event.tenant_id,
            )
        return bool(applied)

    async def list_dead_letters(self, tenant_id: str | None = None, limit: int = 100) -> list[UsageEvent]:
        """Operator view of events that exhausted their attempts."""
        async with self._session_factory() as session:
            return await self._event_repo_factory(session).list_dead_letters(
                self.max_attempts,
                tenant_id=tenant_id,
                limit=limit,
            )

    async def requeue(self, event_id: uuid.UUID) -> UsageEvent:
        """Return a dead-lettered event to pending with a fresh attempt budget.

        Raises:
            NotFoundError: If the event does not exist.
            InvalidEventError: If the event is not dead-lettered.
        """
        async with self._session_factory() as session:
            repo = self._event_repo_factory(session)
            usage_event = await repo.get_by_id(event_id)
            if usage_event is None:
                raise NotFoundError(f"Usage event {event_id} not found")
            if not await repo.requeue(event_id, self.max_attempts):
                raise InvalidEventError(f"Usage event {event_id} is not dead-lettered")
            await session.commit()
            await session.refresh(usage_event)

        logger.info("usage_event_requeued", event_id=str(event_id), tenant_id=usage_event.tenant_id)
        return usage_event


class ReconcilerPool:
    """Runs N reconciler worker loops on the event loop.

    Each worker polls SyncBatch on a fixed interval and goes again at
    once when its batch came back full.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        workers: int,
        batch_size: int,
        poll_interval_seconds: float,
    ) -> None:
        self._reconciler = reconciler
        self._workers = workers
        self._batch_size = batch_size
        self._poll_interval = poll_interval_seconds
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._run_worker(f"worker-{index}"), name=f"reconciler-worker-{index}")
            for index in range(self._workers)
        ]
        logger.info("reconciler_pool_started", workers=self._workers, batch_size=self._batch_size)

    async def stop(self) -> None:
        """Signal workers to stop and wait for in-progress batches to finish."""
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("reconciler_pool_stopped")

    async def _run_worker(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            batch_full = False
            try:
                result = await self._reconciler.sync_batch(self._batch_size, worker_id=worker_id)
                batch_full = result.claimed >= self._batch_size
            except Exception:
                # Database outage: log and retry after the poll interval
                logger.exception("reconciler_batch_failed", worker_id=worker_id)

            if batch_full:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass


__all__ = ["Reconciler", "ReconcilerPool", "SyncBatchResult"]
