"""Static, versioned pricing and tier-limit lookups.

Unit costs are looked up once, when a usage event is recorded, and frozen
on the event row. Changing this table never alters historical costs.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from aumos_usage_metering.errors import InvalidEventError

UNLIMITED = -1
COST_QUANTUM = Decimal("0.000001")


class UsageKind(str, Enum):
    """Closed set of billable usage kinds."""

    INVITATION = "invitation"
    SMS = "sms"
    AI_QUERY = "ai_query"
    WHATSAPP = "whatsapp"
    EMAIL = "email"

    @classmethod
    def parse(cls, value: "str | UsageKind") -> "UsageKind":
        """Resolve a raw kind string, rejecting anything outside the enum.

        Raises:
            InvalidEventError: If the kind is unknown.
        """
        if isinstance(value, UsageKind):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidEventError(f"Unknown usage kind: {value!r}") from None


class Tier(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: "str | Tier") -> "Tier":
        """Resolve a raw tier name.

        Raises:
            InvalidEventError: If the tier is unknown.
        """
        if isinstance(value, Tier):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidEventError(f"Unknown tier: {value!r}") from None


@dataclass(frozen=True)
class TierLimits:
    """Monthly quotas, overage rates, and grace period for one tier.

    A quota of UNLIMITED (-1) is never exceeded.
    """

    tier: Tier
    quotas: Mapping[UsageKind, int]
    overage_rates: Mapping[UsageKind, Decimal]
    grace_period_days: int

    def quota_for(self, kind: UsageKind) -> int:
        return self.quotas.get(kind, UNLIMITED)

    def overage_rate_for(self, kind: UsageKind) -> Decimal:
        return self.overage_rates.get(kind, Decimal("0"))


@dataclass(frozen=True)
class PricingTable:
    """Versioned unit-cost and tier-limit table."""

    version: str
    unit_costs: Mapping[UsageKind, Decimal]
    tiers: Mapping[Tier, TierLimits]

    def cost_of(self, kind: UsageKind) -> Decimal:
        """Get the unit cost for a usage kind.

        Raises:
            ValueError: If this table has no price for the kind.
        """
        if kind not in self.unit_costs:
            raise ValueError(f"No unit cost configured for {kind.value} in pricing {self.version}")
        return self.unit_costs[kind]

    def limits_for(self, tier: Tier) -> TierLimits:
        """Get quotas and overage rates for a tier.

        Raises:
            ValueError: If the tier is not configured.
        """
        if tier not in self.tiers:
            raise ValueError(f"Tier {tier.value} not configured in pricing {self.version}")
        return self.tiers[tier]


def compute_total_cost(unit_cost: Decimal, quantity: int) -> Decimal:
    """quantity x unit_cost, rounded to the ledger's fixed-point scale."""
    return (unit_cost * quantity).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def is_exceeded(count: int, limit: int) -> bool:
    return limit != UNLIMITED and count > limit


def overage_units(count: int, limit: int) -> int:
    if limit == UNLIMITED:
        return 0
    return max(0, count - limit)


def _limits(
    tier: Tier,
    quotas: tuple[int, int, int, int, int],
    rates: tuple[str, str, str, str, str],
    grace_period_days: int,
) -> TierLimits:
    kinds = list(UsageKind)
    return TierLimits(
        tier=tier,
        quotas=dict(zip(kinds, quotas)),
        overage_rates={kind: Decimal(rate) for kind, rate in zip(kinds, rates)},
        grace_period_days=grace_period_days,
    )


# Column order: invitation, sms, ai_query, whatsapp, email
DEFAULT_PRICING = PricingTable(
    version="2026-01",
    unit_costs={
        UsageKind.INVITATION: Decimal("0.0100"),
        UsageKind.SMS: Decimal("0.0075"),
        UsageKind.AI_QUERY: Decimal("0.0200"),
        UsageKind.WHATSAPP: Decimal("0.0050"),
        UsageKind.EMAIL: Decimal("0.0010"),
    },
    tiers={
        Tier.FREE: _limits(
            Tier.FREE,
            (100, 50, 20, 50, 500),
            ("0.0200", "0.0150", "0.0400", "0.0100", "0.0020"),
            grace_period_days=3,
        ),
        Tier.STARTER: _limits(
            Tier.STARTER,
            (1000, 1000, 200, 500, 5000),
            ("0.0150", "0.0100", "0.0300", "0.0075", "0.0015"),
            grace_period_days=7,
        ),
        Tier.PROFESSIONAL: _limits(
            Tier.PROFESSIONAL,
            (10000, 5000, 2000, 5000, 50000),
            ("0.0120", "0.0090", "0.0250", "0.0060", "0.0012"),
            grace_period_days=14,
        ),
        Tier.ENTERPRISE: _limits(
            Tier.ENTERPRISE,
            (UNLIMITED, UNLIMITED, UNLIMITED, UNLIMITED, UNLIMITED),
            ("0", "0", "0", "0", "0"),
            grace_period_days=30,
        ),
    },
)


__all__ = [
    "COST_QUANTUM",
    "DEFAULT_PRICING",
    "PricingTable",
    "Tier",
    "TierLimits",
    "UNLIMITED",
    "UsageKind",
    "compute_total_cost",
    "is_exceeded",
    "overage_units",
]
