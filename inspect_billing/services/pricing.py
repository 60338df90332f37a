"""
Pricing Calculator - Tier, overage, module and top-up pricing.

Everything here is a pure function of its arguments and the reference data below,
so the same inputs always produce the same breakdown (reproducible invoices).

Prices are authored in minor units. A currency without an authored price is
converted from the base currency (GBP) with the fallback rate table and rounded
half-up to the minor unit; such breakdowns are marked converted=True.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from inspect_billing.config import settings
from inspect_billing.exceptions import PricingValidationError
from inspect_billing.models.api import BillingPeriod

BASE_CURRENCY = settings.base_currency.upper()

# Base-currency units per 1 GBP
FALLBACK_RATES: dict[str, Decimal] = {
    "GBP": Decimal("1.0"),
    "USD": Decimal("1.27"),
    "EUR": Decimal("1.17"),
    "AED": Decimal("4.67"),
}

SUPPORTED_CURRENCIES = frozenset(FALLBACK_RATES)


@dataclass(frozen=True)
class PricingTier:
    """Usage bracket with an included allowance. Immutable reference data."""

    code: str
    name: str
    included_usage_units: int
    base_price_minor: dict[str, int]
    overage_unit_price_minor: dict[str, int]


@dataclass(frozen=True)
class AddOnModule:
    """Optional product module billed per month."""

    code: str
    name: str
    price_minor: dict[str, int]


@dataclass(frozen=True)
class TopUpPack:
    """Fixed-size credit pack, priced per credit like any other top-up."""

    credits: int


# Ascending by included_usage_units
TIERS: tuple[PricingTier, ...] = (
    PricingTier(
        code="starter",
        name="Starter",
        included_usage_units=10,
        base_price_minor={"GBP": 4900, "USD": 6125, "AED": 22540},
        overage_unit_price_minor={"GBP": 1200},
    ),
    PricingTier(
        code="growth",
        name="Growth",
        included_usage_units=30,
        base_price_minor={"GBP": 12900, "USD": 16125, "AED": 59340},
        overage_unit_price_minor={"GBP": 1000},
    ),
    PricingTier(
        code="professional",
        name="Professional",
        included_usage_units=75,
        base_price_minor={"GBP": 29900, "USD": 37375, "AED": 137540},
        overage_unit_price_minor={"GBP": 900},
    ),
    PricingTier(
        code="enterprise",
        name="Enterprise",
        included_usage_units=200,
        base_price_minor={"GBP": 69900, "USD": 87375, "AED": 321540},
        overage_unit_price_minor={"GBP": 550},
    ),
)

TIERS_BY_CODE: dict[str, PricingTier] = {tier.code: tier for tier in TIERS}

_MODULE_PRICE = {"GBP": 15000, "USD": 19000, "AED": 70000}

ADD_ON_MODULES: dict[str, AddOnModule] = {
    module.code: module
    for module in (
        AddOnModule("white_label", "White Label", _MODULE_PRICE),
        AddOnModule("tenant_portal", "Tenant Portal", _MODULE_PRICE),
        AddOnModule("maintenance", "Maintenance", _MODULE_PRICE),
        AddOnModule("ai_preventative", "AI Preventative Maintenance", _MODULE_PRICE),
        AddOnModule("dispute_resolution", "Dispute Resolution", _MODULE_PRICE),
    )
}

TOPUP_PACKS: tuple[TopUpPack, ...] = (TopUpPack(20), TopUpPack(50), TopUpPack(100))


@dataclass(frozen=True)
class PriceBreakdown:
    """Result of price(). Every amount is in minor units of currency."""

    tier_code: str
    included_units: int
    usage_units: int
    currency: str
    billing_period: BillingPeriod
    tier_price_minor: int
    overage_units: int
    overage_unit_price_minor: int
    overage_cost_minor: int
    module_codes: tuple[str, ...]
    module_cost_minor: int
    total_minor: int
    converted: bool
    conversion_rate: Decimal | None

    @property
    def conversion_source(self) -> str:
        """Whether any billed component came from the fallback rate table."""
        return "fallback" if self.converted else "authoritative"


@dataclass(frozen=True)
class PackLine:
    """How many of one pack size to buy."""

    credits: int
    count: int
    price_minor: int


@dataclass(frozen=True)
class PackRecommendation:
    """Cheapest pack combination covering a credit shortfall."""

    credits_needed: int
    credits_total: int
    currency: str
    total_minor: int
    packs: tuple[PackLine, ...]
    converted: bool


@dataclass(frozen=True)
class _Amount:
    minor: int
    converted: bool


# ===== Public API =====


def price(
    usage_units: int,
    currency: str,
    billing_period: BillingPeriod | str,
    active_module_codes: Iterable[str] = (),
) -> PriceBreakdown:
    """
    Price a month (or year) of usage.

    Tier: the highest tier whose included units are <= usage, or the lowest tier
    when usage is below every threshold. Overage is billed per unit beyond the
    tier allowance at the tier's overage price. Annual billing multiplies tier and
    module prices by 12 and applies the annual discount; overage is not discounted.

    Raises:
        PricingValidationError: negative usage, unknown currency, period or module
    """
    if isinstance(usage_units, bool) or not isinstance(usage_units, int):
        raise PricingValidationError("usage_units", "must be an integer")
    if usage_units < 0:
        raise PricingValidationError("usage_units", f"must not be negative, got {usage_units}")

    code = normalize_currency(currency)
    period = _parse_period(billing_period)
    modules = _parse_modules(active_module_codes)

    tier = select_tier(usage_units)
    rate = FALLBACK_RATES[code]

    tier_price = _resolve(tier.base_price_minor, code)
    overage_units = max(0, usage_units - tier.included_usage_units)
    overage_unit = _resolve(tier.overage_unit_price_minor, code)
    module_prices = [_resolve(ADD_ON_MODULES[m].price_minor, code) for m in modules]

    tier_price_minor = _apply_period(tier_price.minor, period)
    overage_cost_minor = overage_units * overage_unit.minor
    module_cost_minor = _apply_period(sum(p.minor for p in module_prices), period)

    converted = (
        tier_price.converted
        or (overage_units > 0 and overage_unit.converted)
        or any(p.converted for p in module_prices)
    )

    return PriceBreakdown(
        tier_code=tier.code,
        included_units=tier.included_usage_units,
        usage_units=usage_units,
        currency=code,
        billing_period=period,
        tier_price_minor=tier_price_minor,
        overage_units=overage_units,
        overage_unit_price_minor=overage_unit.minor,
        overage_cost_minor=overage_cost_minor,
        module_codes=modules,
        module_cost_minor=module_cost_minor,
        total_minor=tier_price_minor + overage_cost_minor + module_cost_minor,
        converted=converted,
        conversion_rate=rate if converted else None,
    )


def select_tier(usage_units: int) -> PricingTier:
    """Closed lower bound: a tier starting at 30 applies at exactly 30."""
    selected = TIERS[0]
    for tier in TIERS:
        if tier.included_usage_units <= usage_units:
            selected = tier
    return selected


def get_tier(code: str) -> PricingTier:
    """
    Look up a tier by code.

    Raises:
        PricingValidationError: unknown tier code
    """
    tier = TIERS_BY_CODE.get(code)
    if tier is None:
        raise PricingValidationError("tier_code", f"unknown tier {code!r}")
    return tier


def tier_price_minor(tier: PricingTier, currency: str, billing_period: BillingPeriod | str) -> int:
    """Price of one billing period of a tier, without overage or modules."""
    code = normalize_currency(currency)
    return _apply_period(_resolve(tier.base_price_minor, code).minor, _parse_period(billing_period))


def topup_price_minor(credits: int, currency: str) -> int:
    """Price of a custom-quantity top-up at the configured per-credit price."""
    if credits <= 0:
        raise PricingValidationError("credits", f"must be positive, got {credits}")
    return credits * _topup_unit(normalize_currency(currency)).minor


def recommend_topup_packs(credits_needed: int, currency: str) -> PackRecommendation:
    """
    Cheapest combination of packs that covers at least credits_needed.

    Unbounded knapsack over credit counts up to credits_needed plus the largest
    pack. Ties prefer fewer packs, then fewer surplus credits.

    Raises:
        PricingValidationError: non-positive need or unknown currency
    """
    if credits_needed <= 0:
        raise PricingValidationError("credits", f"must be positive, got {credits_needed}")
    code = normalize_currency(currency)

    # Checkout charges credits x unit, so packs are priced the same way
    unit = _topup_unit(code)
    priced = [(pack, _Amount(pack.credits * unit.minor, unit.converted)) for pack in TOPUP_PACKS]
    ceiling = credits_needed + max(pack.credits for pack in TOPUP_PACKS)

    # best[n] = (cost, pack_count, last_pack_index) for exactly n credits
    best: list[tuple[int, int, int] | None] = [None] * (ceiling + 1)
    best[0] = (0, 0, -1)
    for n in range(1, ceiling + 1):
        for index, (pack, amount) in enumerate(priced):
            if pack.credits > n or best[n - pack.credits] is None:
                continue
            prev_cost, prev_count, _ = best[n - pack.credits]  # type: ignore[misc]
            candidate = (prev_cost + amount.minor, prev_count + 1, index)
            current = best[n]
            if current is None or candidate[:2] < current[:2]:
                best[n] = candidate

    options = [
        (entry[0], entry[1], n) for n, entry in enumerate(best) if n >= credits_needed and entry
    ]
    total_minor, _, credits_total = min(options)

    counts = [0] * len(priced)
    n = credits_total
    while n > 0:
        _, _, index = best[n]  # type: ignore[misc]
        counts[index] += 1
        n -= priced[index][0].credits

    lines = tuple(
        PackLine(credits=pack.credits, count=count, price_minor=amount.minor)
        for (pack, amount), count in zip(priced, counts)
        if count
    )
    return PackRecommendation(
        credits_needed=credits_needed,
        credits_total=credits_total,
        currency=code,
        total_minor=total_minor,
        packs=lines,
        converted=any(amount.converted for (_, amount), count in zip(priced, counts) if count),
    )


def tier_catalog() -> tuple[PricingTier, ...]:
    """Tiers in ascending order of included units."""
    return TIERS


def module_catalog() -> tuple[AddOnModule, ...]:
    """Add-on modules ordered by code."""
    return tuple(ADD_ON_MODULES[code] for code in sorted(ADD_ON_MODULES))


def convert_from_base(amount_minor: int, currency: str) -> int:
    """Convert a base-currency amount with the fallback rate, rounding half-up."""
    code = normalize_currency(currency)
    return _round_minor(Decimal(amount_minor) * FALLBACK_RATES[code])


def normalize_currency(currency: str) -> str:
    """
    Upper-case and check a currency code.

    Raises:
        PricingValidationError: currency not in the rate table
    """
    code = currency.strip().upper() if isinstance(currency, str) else ""
    if code not in SUPPORTED_CURRENCIES:
        raise PricingValidationError("currency", f"unsupported currency {currency!r}")
    return code


def annual_multiplier() -> Decimal:
    """Twelve months less the annual discount."""
    return Decimal(12) * (Decimal(1) - settings.annual_discount_percentage / Decimal(100))


# ===== Private Helpers =====


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _resolve(prices: dict[str, int], currency: str) -> _Amount:
    if currency in prices:
        return _Amount(prices[currency], converted=False)
    return _Amount(convert_from_base(prices[BASE_CURRENCY], currency), converted=True)


def _topup_unit(currency: str) -> _Amount:
    return _resolve({BASE_CURRENCY: settings.topup_unit_price_minor}, currency)


def _apply_period(monthly_minor: int, period: BillingPeriod) -> int:
    if period == BillingPeriod.ANNUAL:
        return _round_minor(Decimal(monthly_minor) * annual_multiplier())
    return monthly_minor


def _parse_period(billing_period: BillingPeriod | str) -> BillingPeriod:
    try:
        return BillingPeriod(billing_period)
    except ValueError as exc:
        raise PricingValidationError(
            "billing_period", f"unknown billing period {billing_period!r}"
        ) from exc


def _parse_modules(codes: Iterable[str]) -> tuple[str, ...]:
    unique = sorted(set(codes))
    for code in unique:
        if code not in ADD_ON_MODULES:
            raise PricingValidationError("modules", f"unknown module {code!r}")
    return tuple(unique)
