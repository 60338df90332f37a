"""
FastAPI Dependencies - Service authentication and payment provider wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, status
from structlog import get_logger

from inspect_billing.config import settings
from inspect_billing.services.events import LedgerEventBroker, ledger_events
from inspect_billing.services.payment_provider import PaymentProvider
from inspect_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


# ============================================================================
# API Key Authentication (for service-to-service)
# ============================================================================


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    The check is skipped when no API key is configured.

    Usage:
        @router.get("/v1/billing/organizations/{organization_id}/balance")
        async def get_balance(
            organization_id: UUID,
            _: None = Depends(require_api_key),
        ):
            pass

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.api_key:
        return

    if x_api_key is None or not secrets.compare_digest(
        x_api_key.encode("utf-8"), settings.api_key.encode("utf-8")
    ):
        logger.warning("api_key_rejected", key_present=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


# ============================================================================
# Payment Provider
# ============================================================================


def get_payment_provider() -> PaymentProvider:
    """
    FastAPI dependency returning the configured payment provider.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )

    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.provider_timeout_seconds,
    )


def get_event_broker() -> LedgerEventBroker:
    """FastAPI dependency returning the process-wide ledger event broker."""
    return ledger_events
