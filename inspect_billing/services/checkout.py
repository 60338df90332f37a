"""
Checkout Service - Opens provider checkout sessions and records what they buy.

The price and the plan snapshot are frozen into the checkout_sessions row at
creation, so reconciliation never re-prices.
"""

from dataclasses import dataclass
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import CheckoutSession
from inspect_billing.exceptions import PricingValidationError, WriteVerificationError
from inspect_billing.models.api import BillingPeriod, CheckoutKind, CheckoutStatus, ReconcileState
from inspect_billing.models.domain import CheckoutData
from inspect_billing.services import pricing
from inspect_billing.services.organizations import OrganizationService
from inspect_billing.services.payment_provider import CheckoutRequest, PaymentProvider

logger = get_logger(__name__)

QUOTATION_PLAN_CODE = "quotation"


@dataclass(frozen=True)
class CheckoutIntent:
    """What the customer asked to buy."""

    organization_id: UUID
    kind: CheckoutKind
    currency: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    tier_code: str | None = None
    credits: int | None = None
    quoted_price_minor: int | None = None
    quoted_inspections: int | None = None


@dataclass(frozen=True)
class _Offer:
    amount_minor: int
    credits: int
    description: str
    plan_code: str | None = None
    plan_name: str | None = None
    plan_included_credits: int | None = None
    billing_period: BillingPeriod | None = None


class CheckoutService:
    """Creates checkout sessions for subscriptions, top-ups and quotations."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize checkout service with database session and payment provider."""
        self.session = session
        self.provider = provider
        self.organizations = OrganizationService(session)

    async def create(self, intent: CheckoutIntent) -> CheckoutData:
        """
        Price the purchase, open a provider session and record it locally.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            PricingValidationError: Unknown tier, currency or bad quantities
            PaymentProviderError: Provider rejected or timed out
            WriteVerificationError: Session row not readable after insert
        """
        organization = await self.organizations.require(intent.organization_id)
        currency = pricing.normalize_currency(intent.currency)
        offer = self._price(intent, currency)

        link = await self.provider.create_checkout_session(
            CheckoutRequest(
                organization_id=intent.organization_id,
                kind=intent.kind,
                amount_minor=offer.amount_minor,
                currency=currency,
                description=offer.description,
                credits=offer.credits,
                customer_email=organization.billing_email,
                billing_period=offer.billing_period,
                idempotency_key=f"checkout:{intent.organization_id}:{uuid4()}",
            )
        )

        row = CheckoutSession(
            provider_session_id=link.session_id,
            organization_id=intent.organization_id,
            kind=intent.kind.value,
            status=CheckoutStatus.OPEN.value,
            reconcile_state=ReconcileState.OPEN.value,
            credits_quantity=offer.credits,
            amount_minor=offer.amount_minor,
            currency=currency,
            plan_code=offer.plan_code,
            plan_name=offer.plan_name,
            plan_included_credits=offer.plan_included_credits,
            billing_period=offer.billing_period.value if offer.billing_period else None,
        )
        self.session.add(row)
        await self.session.flush()

        verified = await self.session.get(CheckoutSession, row.id)
        if verified is None:
            raise WriteVerificationError(f"Checkout session {link.session_id} not found after insert")

        await self.session.commit()

        logger.info(
            "checkout_session_recorded",
            organization_id=str(intent.organization_id),
            provider_session_id=link.session_id,
            kind=intent.kind.value,
            amount_minor=offer.amount_minor,
            currency=currency,
            credits=offer.credits,
        )
        return CheckoutData(
            provider_session_id=link.session_id,
            organization_id=intent.organization_id,
            kind=intent.kind,
            url=link.url,
            amount_minor=offer.amount_minor,
            currency=currency,
            credits_quantity=offer.credits,
        )

    # ===== Private Helper Methods =====

    @staticmethod
    def _price(intent: CheckoutIntent, currency: str) -> _Offer:
        if intent.kind == CheckoutKind.SUBSCRIPTION:
            if not intent.tier_code:
                raise PricingValidationError("tier_code", "required for subscription checkout")
            tier = pricing.get_tier(intent.tier_code)
            period = intent.billing_period
            credits = tier.included_usage_units * (12 if period == BillingPeriod.ANNUAL else 1)
            return _Offer(
                amount_minor=pricing.tier_price_minor(tier, currency, period),
                credits=credits,
                description=f"{tier.name} plan ({period.value})",
                plan_code=tier.code,
                plan_name=tier.name,
                plan_included_credits=tier.included_usage_units,
                billing_period=period,
            )

        if intent.kind == CheckoutKind.TOPUP:
            if intent.credits is None or intent.credits <= 0:
                raise PricingValidationError("credits", "a positive credit count is required")
            return _Offer(
                amount_minor=pricing.topup_price_minor(intent.credits, currency),
                credits=intent.credits,
                description=f"{intent.credits} inspection credits",
            )

        if not intent.quoted_inspections or intent.quoted_inspections <= 0:
            raise PricingValidationError("quoted_inspections", "must be positive")
        if intent.quoted_price_minor is None or intent.quoted_price_minor <= 0:
            raise PricingValidationError("quoted_price_minor", "must be positive")
        period = intent.billing_period
        return _Offer(
            amount_minor=intent.quoted_price_minor,
            credits=intent.quoted_inspections * (12 if period == BillingPeriod.ANNUAL else 1),
            description=f"Quoted plan, {intent.quoted_inspections} inspections ({period.value})",
            plan_code=QUOTATION_PLAN_CODE,
            plan_name="Custom Quotation",
            plan_included_credits=intent.quoted_inspections,
            billing_period=period,
        )
