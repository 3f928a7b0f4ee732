"""Unit tests for the static pricing and tier-limit table."""

from decimal import Decimal

import pytest

from aumos_usage_metering.core.pricing import (
    DEFAULT_PRICING,
    UNLIMITED,
    PricingTable,
    Tier,
    UsageKind,
    compute_total_cost,
    is_exceeded,
    overage_units,
)
from aumos_usage_metering.errors import InvalidEventError


class TestUsageKind:
    """Tests for the closed usage-kind enum."""

    def test_parse_accepts_known_kinds(self) -> None:
        assert UsageKind.parse("sms") is UsageKind.SMS
        assert UsageKind.parse(UsageKind.EMAIL) is UsageKind.EMAIL

    @pytest.mark.parametrize("raw", ["badkind", "SMS", "", "fax"])
    def test_parse_rejects_unknown_kinds(self, raw: str) -> None:
        with pytest.raises(InvalidEventError, match="Unknown usage kind"):
            UsageKind.parse(raw)

    def test_tier_parse_rejects_unknown_tier(self) -> None:
        with pytest.raises(InvalidEventError, match="Unknown tier"):
            Tier.parse("platinum")


class TestPricingTable:
    """Tests for CostOf and LimitsFor lookups."""

    def test_cost_of_every_kind_is_priced(self) -> None:
        for kind in UsageKind:
            assert DEFAULT_PRICING.cost_of(kind) > Decimal("0")

    def test_starter_sms_limit_is_1000(self) -> None:
        assert DEFAULT_PRICING.limits_for(Tier.STARTER).quota_for(UsageKind.SMS) == 1000

    def test_enterprise_is_unlimited_everywhere(self) -> None:
        limits = DEFAULT_PRICING.limits_for(Tier.ENTERPRISE)
        assert all(limits.quota_for(kind) == UNLIMITED for kind in UsageKind)

    def test_every_tier_has_a_grace_period(self) -> None:
        for tier in Tier:
            assert DEFAULT_PRICING.limits_for(tier).grace_period_days > 0

    def test_missing_price_raises(self) -> None:
        partial = PricingTable(version="test", unit_costs={UsageKind.SMS: Decimal("0.01")}, tiers={})
        with pytest.raises(ValueError, match="No unit cost configured for email"):
            partial.cost_of(UsageKind.EMAIL)
        with pytest.raises(ValueError, match="Tier free not configured"):
            partial.limits_for(Tier.FREE)


class TestCostHelpers:
    """Tests for cost and quota arithmetic."""

    def test_compute_total_cost_is_exact_fixed_point(self) -> None:
        assert compute_total_cost(Decimal("0.0075"), 3) == Decimal("0.022500")
        assert compute_total_cost(Decimal("0.1"), 3) == Decimal("0.300000")

    def test_compute_total_cost_rounds_half_up(self) -> None:
        assert compute_total_cost(Decimal("0.0000005"), 1) == Decimal("0.000001")

    @pytest.mark.parametrize(
        ("count", "limit", "expected"),
        [
            (1000, 1000, False),
            (1001, 1000, True),
            (0, 0, False),
            (1, 0, True),
            (50_000, UNLIMITED, False),
        ],
    )
    def test_is_exceeded(self, count: int, limit: int, expected: bool) -> None:
        assert is_exceeded(count, limit) is expected

    def test_overage_units(self) -> None:
        assert overage_units(1001, 1000) == 1
        assert overage_units(900, 1000) == 0
        assert overage_units(10**6, UNLIMITED) == 0
