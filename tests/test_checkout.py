"""
Tests for CheckoutService.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from inspect_billing.db.models import CheckoutSession
from inspect_billing.exceptions import (
    OrganizationNotFoundError,
    PaymentProviderError,
    PricingValidationError,
)
from inspect_billing.models.api import BillingPeriod, CheckoutKind, ReconcileState
from inspect_billing.services import pricing
from inspect_billing.services.checkout import CheckoutIntent, CheckoutService


class TestCreateCheckout:
    """Tests for CheckoutService.create."""

    async def test_subscription_snapshot_recorded(self, session, organization, provider):
        """The tier's price and allowance are frozen into the session row."""
        checkout = await CheckoutService(session, provider).create(
            CheckoutIntent(
                organization_id=organization.id,
                kind=CheckoutKind.SUBSCRIPTION,
                currency="gbp",
                billing_period=BillingPeriod.ANNUAL,
                tier_code="professional",
            )
        )

        tier = pricing.get_tier("professional")
        assert checkout.amount_minor == pricing.tier_price_minor(tier, "GBP", "annual")
        assert checkout.credits_quantity == 75 * 12
        assert checkout.currency == "GBP"
        assert checkout.url.startswith("https://checkout.test/")

        result = await session.execute(
            select(CheckoutSession).where(
                CheckoutSession.provider_session_id == checkout.provider_session_id
            )
        )
        row = result.scalar_one()
        assert row.plan_code == "professional"
        assert row.plan_included_credits == 75
        assert row.billing_period == "annual"
        assert row.reconcile_state == ReconcileState.OPEN.value
        assert row.processed_at is None

    async def test_topup_priced_per_credit(self, session, organization, provider):
        """Custom top-ups are one-off payments at the per-credit price."""
        checkout = await CheckoutService(session, provider).create(
            CheckoutIntent(
                organization_id=organization.id,
                kind=CheckoutKind.TOPUP,
                currency="GBP",
                credits=40,
            )
        )

        assert checkout.amount_minor == 40 * 75
        request = provider.checkout_requests[0]
        assert request.billing_period is None
        assert request.customer_email == "billing@acme.test"
        assert request.idempotency_key.startswith(f"checkout:{organization.id}:")

    @pytest.mark.parametrize(("needed", "currency"), [(100, "GBP"), (21, "GBP"), (50, "USD")])
    async def test_topup_charges_recommended_pack_price(
        self, session, organization, provider, needed, currency
    ):
        """Buying the recommended packs costs what the recommendation quoted."""
        recommendation = pricing.recommend_topup_packs(needed, currency)
        checkout = await CheckoutService(session, provider).create(
            CheckoutIntent(
                organization_id=organization.id,
                kind=CheckoutKind.TOPUP,
                currency=currency,
                credits=recommendation.credits_total,
            )
        )

        assert checkout.amount_minor == recommendation.total_minor

    async def test_quotation_uses_quoted_price(self, session, organization, provider):
        """Quotations are billed at the agreed price."""
        checkout = await CheckoutService(session, provider).create(
            CheckoutIntent(
                organization_id=organization.id,
                kind=CheckoutKind.QUOTATION,
                currency="GBP",
                quoted_price_minor=99000,
                quoted_inspections=120,
            )
        )

        assert checkout.amount_minor == 99000
        assert checkout.credits_quantity == 120
        assert provider.checkout_requests[0].billing_period == BillingPeriod.MONTHLY

    async def test_unknown_tier(self, session, organization, provider):
        """Unknown tiers are rejected before the provider is called."""
        with pytest.raises(PricingValidationError):
            await CheckoutService(session, provider).create(
                CheckoutIntent(
                    organization_id=organization.id,
                    kind=CheckoutKind.SUBSCRIPTION,
                    currency="GBP",
                    tier_code="platinum",
                )
            )
        assert provider.checkout_requests == []

    async def test_unsupported_currency(self, session, organization, provider):
        """Currencies outside the rate table are rejected."""
        with pytest.raises(PricingValidationError):
            await CheckoutService(session, provider).create(
                CheckoutIntent(
                    organization_id=organization.id,
                    kind=CheckoutKind.TOPUP,
                    currency="JPY",
                    credits=10,
                )
            )

    async def test_unknown_organization(self, session, provider):
        """Missing organizations raise."""
        with pytest.raises(OrganizationNotFoundError):
            await CheckoutService(session, provider).create(
                CheckoutIntent(
                    organization_id=uuid4(), kind=CheckoutKind.TOPUP, currency="GBP", credits=5
                )
            )

    async def test_provider_failure_records_nothing(self, session, organization, provider):
        """No local row is written when the provider fails."""

        async def failing(request):
            raise PaymentProviderError("Stripe checkout_create failed: card network down")

        provider.create_checkout_session = failing

        with pytest.raises(PaymentProviderError):
            await CheckoutService(session, provider).create(
                CheckoutIntent(
                    organization_id=organization.id,
                    kind=CheckoutKind.TOPUP,
                    currency="GBP",
                    credits=5,
                )
            )

        result = await session.execute(select(CheckoutSession))
        assert result.scalars().all() == []
