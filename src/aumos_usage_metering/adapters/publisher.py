"""Publishers announcing newly recorded usage events.

Publication happens after the ledger commit and is best-effort: the
reconciler discovers pending events from the ledger itself, so a lost
notification never loses a billable event.
"""

import structlog

from aumos_usage_metering.core.models import UsageEvent

logger = structlog.get_logger(__name__)


class LogUsageEventPublisher:
    """Emit a structured usage_recorded event to the log stream."""

    async def publish_usage_recorded(self, usage_event: UsageEvent) -> None:
        logger.info(
            "usage_recorded",
            event_id=str(usage_event.id),
            tenant_id=usage_event.tenant_id,
            kind=usage_event.kind,
            quantity=usage_event.quantity,
            total_cost=str(usage_event.total_cost),
            billing_month=usage_event.billing_month.isoformat(),
        )


__all__ = ["LogUsageEventPublisher"]
