"""
Stripe Payment Provider Implementation.

The Stripe SDK is blocking; each call runs in a worker thread and is bounded by
the configured provider timeout.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import stripe
from structlog import get_logger

from inspect_billing.config import settings
from inspect_billing.exceptions import PaymentProviderError, WebhookVerificationError
from inspect_billing.models.api import BillingPeriod
from inspect_billing.observability import metrics, trace_operation
from inspect_billing.services.payment_provider import (
    CheckoutLink,
    CheckoutRequest,
    PortalLink,
    ProviderSession,
    WebhookEvent,
)

logger = get_logger(__name__)

T = TypeVar("T")

_INTERVALS = {BillingPeriod.MONTHLY: "month", BillingPeriod.ANNUAL: "year"}


def _field(obj: Any, name: str) -> Any:
    """Read an optional attribute from a Stripe object."""
    if obj is None:
        return None
    return getattr(obj, name, None)


def _timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value else None


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol with Stripe Checkout and the
    Stripe billing portal.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: float | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for any single Stripe call
            success_url: Redirect after payment; may contain {CHECKOUT_SESSION_ID}
            cancel_url: Redirect when the customer abandons checkout
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds
        self.success_url = success_url or settings.stripe_success_url
        self.cancel_url = cancel_url or settings.stripe_cancel_url
        stripe.api_key = api_key

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutLink:
        """
        Create a Stripe Checkout session.

        Subscriptions and quotations are recurring at the requested interval;
        top-ups are one-off payments.

        Raises:
            PaymentProviderError: If Stripe API call fails or times out
        """
        price_data: dict[str, Any] = {
            "currency": request.currency.lower(),
            "unit_amount": request.amount_minor,
            "product_data": {"name": request.description},
        }
        if request.billing_period is not None:
            price_data["recurring"] = {"interval": _INTERVALS[request.billing_period]}
            mode = "subscription"
        else:
            mode = "payment"

        logger.info(
            "creating_stripe_checkout_session",
            organization_id=str(request.organization_id),
            kind=request.kind.value,
            amount_minor=request.amount_minor,
            currency=request.currency,
            mode=mode,
        )

        session = await self._call(
            "checkout_create",
            stripe.checkout.Session.create,
            mode=mode,
            line_items=[{"price_data": price_data, "quantity": 1}],
            customer_email=request.customer_email,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            client_reference_id=str(request.organization_id),
            metadata={
                "organization_id": str(request.organization_id),
                "kind": request.kind.value,
                "credits": str(request.credits),
            },
            idempotency_key=request.idempotency_key,
        )

        logger.info("stripe_checkout_session_created", session_id=session.id)
        return CheckoutLink(session_id=session.id, url=session.url or "")

    async def fetch_session(self, session_id: str) -> ProviderSession:
        """
        Retrieve a Checkout session's status.

        Raises:
            PaymentProviderError: If Stripe API call fails or times out
        """
        session = await self._call("checkout_retrieve", stripe.checkout.Session.retrieve, session_id)

        currency = _field(session, "currency")
        result = ProviderSession(
            session_id=session.id,
            status=_field(session, "status") or "open",
            payment_status=_field(session, "payment_status") or "unpaid",
            amount_minor=_field(session, "amount_total"),
            currency=currency.upper() if currency else None,
            customer_id=_field(session, "customer"),
            subscription_id=_field(session, "subscription"),
        )

        logger.info(
            "stripe_checkout_session_retrieved",
            session_id=session_id,
            status=result.status,
            payment_status=result.payment_status,
        )
        return result

    async def open_billing_portal(self, customer_id: str, return_url: str) -> PortalLink:
        """
        Create a Stripe billing portal session.

        Raises:
            PaymentProviderError: If Stripe API call fails or times out
        """
        portal = await self._call(
            "portal_create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return PortalLink(url=portal.url)

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        obj = event.data.object
        event_type: str = event.type

        session_id = None
        invoice_id = None
        subscription_id = _field(obj, "subscription")
        billing_reason = None
        period_start = None
        period_end = None

        if event_type.startswith("checkout.session."):
            session_id = obj.id
        elif event_type.startswith("invoice."):
            invoice_id = obj.id
            billing_reason = _field(obj, "billing_reason")
            if subscription_id is None:
                details = _field(_field(obj, "parent"), "subscription_details")
                subscription_id = _field(details, "subscription")
            lines = _field(_field(obj, "lines"), "data") or []
            if lines:
                period = _field(lines[0], "period")
                period_start = _timestamp(_field(period, "start"))
                period_end = _timestamp(_field(period, "end"))

        logger.info(
            "stripe_webhook_verified",
            event_id=event.id,
            event_type=event_type,
            session_id=session_id,
            invoice_id=invoice_id,
        )

        return WebhookEvent(
            event_id=event.id,
            event_type=event_type,
            session_id=session_id,
            subscription_id=subscription_id if isinstance(subscription_id, str) else None,
            invoice_id=invoice_id,
            billing_reason=billing_reason,
            period_start=period_start,
            period_end=period_end,
        )

    # ===== Private Helper Methods =====

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking Stripe call in a thread, bounded by the timeout."""
        start = time.monotonic()
        try:
            with trace_operation(f"stripe_{operation}", timeout_seconds=self.timeout_seconds):
                result = await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds
                )
        except TimeoutError as exc:
            metrics.record_provider_call(operation, False, time.monotonic() - start)
            logger.error(
                "stripe_call_timed_out", operation=operation, timeout_seconds=self.timeout_seconds
            )
            raise PaymentProviderError(
                f"Stripe {operation} timed out after {self.timeout_seconds}s"
            ) from exc
        except stripe.StripeError as exc:
            metrics.record_provider_call(operation, False, time.monotonic() - start)
            logger.error(
                "stripe_call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe {operation} failed: {exc}") from exc

        metrics.record_provider_call(operation, True, time.monotonic() - start)
        return result
