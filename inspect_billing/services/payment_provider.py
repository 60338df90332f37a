"""
Payment Provider Protocol - Provider-agnostic checkout interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from inspect_billing.models.api import BillingPeriod, CheckoutKind


@dataclass(frozen=True)
class CheckoutRequest:
    """Request to open a hosted checkout page."""

    organization_id: UUID
    kind: CheckoutKind
    amount_minor: int
    currency: str
    description: str
    credits: int
    customer_email: str
    billing_period: BillingPeriod | None  # None for one-off payments
    idempotency_key: str


@dataclass(frozen=True)
class CheckoutLink:
    """Hosted checkout session created by the provider."""

    session_id: str
    url: str


@dataclass(frozen=True)
class ProviderSession:
    """Provider's current view of a checkout session."""

    session_id: str
    status: str  # open, complete, expired
    payment_status: str  # paid, unpaid, no_payment_required
    amount_minor: int | None
    currency: str | None
    customer_id: str | None
    subscription_id: str | None

    @property
    def is_paid(self) -> bool:
        """The session completed and its payment settled."""
        return self.status == "complete" and self.payment_status in ("paid", "no_payment_required")

    @property
    def is_expired(self) -> bool:
        """The session can no longer complete."""
        return self.status == "expired"


@dataclass(frozen=True)
class PortalLink:
    """Self-service billing portal link."""

    url: str


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Only the fields the billing flows act on are carried.
    """

    event_id: str
    event_type: str
    session_id: str | None
    subscription_id: str | None
    invoice_id: str | None
    billing_reason: str | None
    period_start: datetime | None
    period_end: datetime | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Implementations bound every call with a timeout and raise PaymentProviderError
    instead of hanging.
    """

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutLink:
        """
        Create a hosted checkout session.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    async def fetch_session(self, session_id: str) -> ProviderSession:
        """
        Fetch the current state of a checkout session.

        Raises:
            PaymentProviderError: If the provider cannot be reached in time
        """
        ...

    async def open_billing_portal(self, customer_id: str, return_url: str) -> PortalLink:
        """
        Create a billing portal session for a provider customer.

        Raises:
            PaymentProviderError: If portal creation fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
