"""
Hypothesis Property-Based Tests for pricing.

Pricing is pure, so identical inputs must give identical breakdowns and every
breakdown must add up.
"""

from decimal import ROUND_HALF_UP, Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from inspect_billing.models.api import BillingPeriod
from inspect_billing.services import pricing

# ============================================================================
# Hypothesis Strategies
# ============================================================================

usage = st.integers(min_value=0, max_value=1000)
currencies = st.sampled_from(sorted(pricing.SUPPORTED_CURRENCIES))
periods = st.sampled_from(list(BillingPeriod))
module_sets = st.lists(st.sampled_from(sorted(pricing.ADD_ON_MODULES)), max_size=5)
needs = st.integers(min_value=1, max_value=400)


def greedy_pack_cost(credits_needed: int, currency: str) -> int:
    """Largest packs first, then one smallest pack for any remainder."""
    unit = pricing.topup_price_minor(1, currency)
    remaining = credits_needed
    total = 0
    for pack in sorted(pricing.TOPUP_PACKS, key=lambda p: p.credits, reverse=True):
        count, remaining = divmod(remaining, pack.credits)
        total += count * pack.credits * unit
    if remaining:
        smallest = min(pricing.TOPUP_PACKS, key=lambda p: p.credits)
        total += smallest.credits * unit
    return total


# ============================================================================
# Properties
# ============================================================================


class TestPriceProperties:
    """Invariants of price()."""

    @given(units=usage, currency=currencies, period=periods, modules=module_sets)
    @settings(max_examples=100)
    def test_deterministic(self, units, currency, period, modules):
        """Same inputs, same breakdown."""
        assert pricing.price(units, currency, period, modules) == pricing.price(
            units, currency, period, modules
        )

    @given(units=usage, currency=currencies, period=periods, modules=module_sets)
    @settings(max_examples=100)
    def test_total_is_sum_of_parts(self, units, currency, period, modules):
        """Total is tier plus overage plus modules."""
        breakdown = pricing.price(units, currency, period, modules)

        assert breakdown.total_minor == (
            breakdown.tier_price_minor + breakdown.overage_cost_minor + breakdown.module_cost_minor
        )
        assert breakdown.overage_cost_minor == (
            breakdown.overage_units * breakdown.overage_unit_price_minor
        )

    @given(units=usage)
    @settings(max_examples=100)
    def test_tier_allowance_respected(self, units):
        """Overage is only what exceeds the selected tier's allowance."""
        breakdown = pricing.price(units, "GBP", BillingPeriod.MONTHLY)
        assert breakdown.overage_units == max(0, units - breakdown.included_units)
        assert breakdown.included_units <= units or breakdown.tier_code == pricing.TIERS[0].code

    @given(units=usage, currency=currencies, modules=module_sets)
    @settings(max_examples=100)
    def test_annual_prices(self, units, currency, modules):
        """Annual tier and module prices are twelve discounted months, rounded half-up."""
        monthly = pricing.price(units, currency, BillingPeriod.MONTHLY, modules)
        annual = pricing.price(units, currency, BillingPeriod.ANNUAL, modules)

        expected = (Decimal(monthly.tier_price_minor) * pricing.annual_multiplier()).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
        expected_modules = (
            Decimal(monthly.module_cost_minor) * pricing.annual_multiplier()
        ).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        assert annual.tier_price_minor == int(expected)
        assert annual.module_cost_minor == int(expected_modules)
        assert annual.overage_cost_minor == monthly.overage_cost_minor
        assert annual.tier_code == monthly.tier_code

    @given(units=usage, period=periods)
    @settings(max_examples=100)
    def test_euro_is_converted(self, units, period):
        """EUR has no authored prices."""
        breakdown = pricing.price(units, "EUR", period)
        assert breakdown.converted is True
        assert breakdown.conversion_rate == pricing.FALLBACK_RATES["EUR"]

    @given(units=usage, period=periods)
    @settings(max_examples=100)
    def test_gbp_never_converted(self, units, period):
        """Base-currency prices are authoritative."""
        breakdown = pricing.price(units, "GBP", period)
        assert breakdown.converted is False
        assert breakdown.conversion_rate is None


class TestPackProperties:
    """Invariants of recommend_topup_packs()."""

    @given(needed=needs, currency=currencies)
    @settings(max_examples=100)
    def test_covers_need(self, needed, currency):
        """The recommendation always buys enough credits."""
        recommendation = pricing.recommend_topup_packs(needed, currency)

        assert recommendation.credits_total >= needed
        assert recommendation.credits_total == sum(
            line.credits * line.count for line in recommendation.packs
        )
        assert recommendation.total_minor == sum(
            line.price_minor * line.count for line in recommendation.packs
        )

    @given(needed=needs, currency=currencies)
    @settings(max_examples=100)
    def test_no_worse_than_greedy(self, needed, currency):
        """The cheapest combination never costs more than a greedy pick."""
        recommendation = pricing.recommend_topup_packs(needed, currency)
        assert recommendation.total_minor <= greedy_pack_cost(needed, currency)

    @given(needed=needs, currency=currencies)
    @settings(max_examples=100)
    def test_matches_custom_topup_price(self, needed, currency):
        """Packs cost exactly what a top-up of the same credit count is charged."""
        recommendation = pricing.recommend_topup_packs(needed, currency)
        assert recommendation.total_minor == pricing.topup_price_minor(
            recommendation.credits_total, currency
        )
