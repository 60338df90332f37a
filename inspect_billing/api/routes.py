"""
API Routes - FastAPI endpoints for inspection credit billing.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.api.dependencies import (
    get_event_broker,
    get_payment_provider,
    require_api_key,
)
from inspect_billing.config import settings
from inspect_billing.db.session import get_read_db, get_write_db
from inspect_billing.exceptions import (
    DataIntegrityError,
    InsufficientCreditsError,
    NotFoundError,
    OrganizationNotFoundError,
    PaymentProviderError,
    ProviderUnavailableError,
    SessionNotFoundError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    ValidationError,
    WebhookVerificationError,
    WriteVerificationError,
)
from inspect_billing.models.api import (
    AdjustmentRequest,
    AggregateCreditsResponse,
    BalanceResponse,
    BillingPeriod,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CheckoutResponse,
    ConsumeRequest,
    CreateCheckoutRequest,
    CreateOrganizationRequest,
    HealthResponse,
    LedgerChangedEvent,
    LedgerEntryCreatedResponse,
    LedgerEntryResponse,
    LedgerListResponse,
    OrganizationCreditsItem,
    OrganizationResponse,
    PackItem,
    PackRecommendationResponse,
    PlanSnapshotResponse,
    PortalResponse,
    PricingResponse,
    ReconcileRequest,
    ReconcileResponse,
    ReconcileState,
    SubscriptionResponse,
)
from inspect_billing.models.domain import LedgerEntryData, ReconcileResult, SubscriptionData
from inspect_billing.observability import metrics
from inspect_billing.services import pricing
from inspect_billing.services.balance import BalanceService
from inspect_billing.services.checkout import CheckoutIntent, CheckoutService
from inspect_billing.services.events import LedgerChanged, LedgerEventBroker
from inspect_billing.services.identity import DuplicateIdentityAggregator
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.organizations import OrganizationService
from inspect_billing.services.payment_provider import PaymentProvider
from inspect_billing.services.polling import poll_until_settled
from inspect_billing.services.reconciler import CheckoutReconciler
from inspect_billing.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

router = APIRouter()

CHECKOUT_COMPLETED_EVENTS = frozenset(
    {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
)


# =============================================================================
# Organizations
# =============================================================================


@router.post(
    "/v1/billing/organizations",
    response_model=OrganizationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_organization(
    request: CreateOrganizationRequest,
    db: AsyncSession = Depends(get_write_db),
    _: None = Depends(require_api_key),
) -> OrganizationResponse:
    """
    Create an organization.

    Write operation - requires primary database.
    """
    try:
        organization = await OrganizationService(db).create(request.name, request.billing_email)
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create organization",
        ) from exc

    return OrganizationResponse(
        organization_id=organization.organization_id,
        name=organization.name,
        billing_email=organization.billing_email,
        created_at=organization.created_at.isoformat(),
    )


# =============================================================================
# Balance & Ledger
# =============================================================================


@router.get(
    "/v1/billing/organizations/{organization_id}/balance",
    response_model=BalanceResponse,
)
async def get_balance(
    organization_id: UUID,
    as_of: datetime | None = Query(None, description="Balance at this instant (default now)"),
    db: AsyncSession = Depends(get_read_db),
    _: None = Depends(require_api_key),
) -> BalanceResponse:
    """
    Get available, consumed and expired credits.

    Read operation - derived from the ledger on every call.
    """
    moment = _aware(as_of) if as_of else datetime.now(UTC)
    try:
        balance = await BalanceService(db).get_balance(organization_id, moment)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc

    return BalanceResponse(
        organization_id=organization_id,
        available=balance.available,
        consumed=balance.consumed,
        expired=balance.expired,
        as_of=moment.isoformat(),
    )


@router.get(
    "/v1/billing/organizations/{organization_id}/ledger",
    response_model=LedgerListResponse,
)
async def get_ledger(
    organization_id: UUID,
    since: datetime | None = Query(None, description="Only entries at or after this instant"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    _: None = Depends(require_api_key),
) -> LedgerListResponse:
    """
    List ledger entries, newest first.

    Read operation - no database write needed.
    """
    try:
        await OrganizationService(db).require(organization_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc

    entries = await LedgerStore(db).list_for_display(
        organization_id, since=_aware(since) if since else None, limit=limit
    )
    return LedgerListResponse(
        organization_id=organization_id,
        entries=[_ledger_entry_response(entry) for entry in entries],
        total_count=len(entries),
    )


@router.post(
    "/v1/billing/organizations/{organization_id}/adjustments",
    response_model=LedgerEntryCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_adjustment(
    organization_id: UUID,
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_write_db),
    broker: LedgerEventBroker = Depends(get_event_broker),
    _: None = Depends(require_api_key),
) -> LedgerEntryCreatedResponse:
    """
    Record a manual credit correction.

    Write operation - requires primary database.
    """
    service = SubscriptionService(db, broker)
    try:
        result = await service.adjust(
            organization_id,
            quantity=request.quantity,
            notes=request.notes,
            idempotency_key=request.idempotency_key,
        )
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return LedgerEntryCreatedResponse(
        entry_id=result.entry_id,
        organization_id=result.organization_id,
        available=result.available,
    )


@router.post(
    "/v1/billing/organizations/{organization_id}/inspections/consume",
    response_model=LedgerEntryCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def consume_inspection(
    organization_id: UUID,
    request: ConsumeRequest,
    db: AsyncSession = Depends(get_write_db),
    broker: LedgerEventBroker = Depends(get_event_broker),
    _: None = Depends(require_api_key),
) -> LedgerEntryCreatedResponse:
    """
    Spend credits on an inspection.

    A repeated inspection_ref returns the original entry.
    Write operation - requires primary database.
    """
    service = SubscriptionService(db, broker)
    try:
        result = await service.consume_inspection(
            organization_id, request.inspection_ref, request.quantity
        )
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Available: {exc.available}, Required: {exc.required}",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return LedgerEntryCreatedResponse(
        entry_id=result.entry_id,
        organization_id=result.organization_id,
        available=result.available,
    )


# =============================================================================
# Subscription
# =============================================================================


@router.get(
    "/v1/billing/organizations/{organization_id}/subscription",
    response_model=SubscriptionResponse | None,
)
async def get_subscription(
    organization_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    _: None = Depends(require_api_key),
) -> SubscriptionResponse | None:
    """
    Current subscription, or null when the organization never subscribed.

    Read operation - no database write needed.
    """
    try:
        subscription = await SubscriptionService(db).get_subscription(organization_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc

    return _subscription_response(subscription) if subscription else None


@router.post(
    "/v1/billing/organizations/{organization_id}/subscription/cancel",
    response_model=CancelSubscriptionResponse,
)
async def cancel_subscription(
    organization_id: UUID,
    request: CancelSubscriptionRequest,
    db: AsyncSession = Depends(get_write_db),
    _: None = Depends(require_api_key),
) -> CancelSubscriptionResponse:
    """
    Cancel now or at the end of the current period.

    Write operation - requires primary database.
    """
    try:
        result = await SubscriptionService(db).cancel(
            organization_id,
            reason=request.reason,
            reason_text=request.reason_text,
            cancel_immediately=request.cancel_immediately,
        )
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except SubscriptionStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return CancelSubscriptionResponse(
        cancelled_immediately=result.cancelled_immediately,
        current_period_end=result.current_period_end.isoformat(),
    )


# =============================================================================
# Checkout & Portal
# =============================================================================


@router.post(
    "/v1/billing/organizations/{organization_id}/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout(
    organization_id: UUID,
    request: CreateCheckoutRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    _: None = Depends(require_api_key),
) -> CheckoutResponse:
    """
    Open a hosted checkout session for a subscription, top-up or quotation.

    Write operation - requires primary database.
    """
    intent = CheckoutIntent(
        organization_id=organization_id,
        kind=request.kind,
        currency=request.currency,
        billing_period=request.billing_period,
        tier_code=request.tier_code,
        credits=request.credits,
        quoted_price_minor=request.quoted_price_minor,
        quoted_inspections=request.quoted_inspections,
    )

    try:
        checkout = await CheckoutService(db, provider).create(intent)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record checkout session",
        ) from exc

    return CheckoutResponse(
        session_id=checkout.provider_session_id,
        url=checkout.url,
        kind=checkout.kind,
        amount_minor=checkout.amount_minor,
        currency=checkout.currency,
        credits=checkout.credits_quantity,
    )


@router.post(
    "/v1/billing/organizations/{organization_id}/portal",
    response_model=PortalResponse,
)
async def open_billing_portal(
    organization_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    _: None = Depends(require_api_key),
) -> PortalResponse:
    """Self-service billing portal for the organization's provider customer."""
    try:
        customer_id = await SubscriptionService(db).portal_customer(organization_id)
        portal = await provider.open_billing_portal(
            customer_id, settings.stripe_portal_return_url
        )
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc

    return PortalResponse(url=portal.url)


@router.post(
    "/v1/billing/sessions/reconcile",
    response_model=ReconcileResponse,
)
async def reconcile_session(
    request: ReconcileRequest,
    response: Response,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    broker: LedgerEventBroker = Depends(get_event_broker),
    _: None = Depends(require_api_key),
) -> ReconcileResponse:
    """
    Client confirmation after returning from checkout.

    Applies the session if paid. A session still in flight answers 202 with
    status "processing"; the webhook will finish it.
    Write operation - requires primary database.
    """
    reconciler = CheckoutReconciler(db, provider, broker)
    session_id = request.provider_session_id

    try:
        if request.wait:
            outcome = await poll_until_settled(lambda: reconciler.reconcile(session_id))
            result = outcome.result
        else:
            result = await reconciler.reconcile(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout session not found",
        ) from exc
    except ProviderUnavailableError:
        result = None
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    if result is None or not result.terminal:
        response.status_code = status.HTTP_202_ACCEPTED
    if result is None:
        return ReconcileResponse(
            processed=False,
            already_processed=False,
            credits_granted=None,
            status=ReconcileState.PROCESSING,
        )
    return _reconcile_response(result)


@router.post("/v1/billing/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    broker: LedgerEventBroker = Depends(get_event_broker),
) -> dict[str, str]:
    """
    Handle Stripe webhook events.

    Checkout completion goes through the same reconciler as client confirmation.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc

    logger.info(
        "stripe_webhook_received",
        event_id=event.event_id,
        event_type=event.event_type,
        session_id=event.session_id,
    )

    if event.event_type in CHECKOUT_COMPLETED_EVENTS and event.session_id:
        reconciler = CheckoutReconciler(db, provider, broker)
        try:
            result = await reconciler.reconcile(event.session_id)
        except SessionNotFoundError:
            logger.warning("stripe_webhook_unknown_session", session_id=event.session_id)
            return {"status": "ignored", "event_id": event.event_id}
        except ProviderUnavailableError as exc:
            # Non-2xx makes Stripe redeliver
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Payment provider unavailable",
            ) from exc
        outcome = "processed" if result.settled else "pending"
        return {"status": outcome, "event_id": event.event_id}

    if event.event_type == "checkout.session.expired" and event.session_id:
        try:
            await CheckoutReconciler(db, provider, broker).mark_expired(event.session_id)
        except SessionNotFoundError:
            logger.warning("stripe_webhook_unknown_session", session_id=event.session_id)
            return {"status": "ignored", "event_id": event.event_id}
        return {"status": "expired", "event_id": event.event_id}

    if event.event_type == "invoice.paid" and event.billing_reason == "subscription_cycle":
        if not (event.subscription_id and event.invoice_id and event.period_start and event.period_end):
            logger.error("stripe_invoice_missing_fields", event_id=event.event_id)
            return {"status": "ignored", "event_id": event.event_id}
        try:
            await SubscriptionService(db, broker).renew(
                event.subscription_id, event.period_start, event.period_end, event.invoice_id
            )
        except SubscriptionNotFoundError:
            logger.warning(
                "stripe_invoice_unknown_subscription", subscription_id=event.subscription_id
            )
            return {"status": "ignored", "event_id": event.event_id}
        except SubscriptionStateError as exc:
            logger.warning("stripe_invoice_subscription_inactive", error=str(exc))
            return {"status": "acknowledged", "event_id": event.event_id}
        return {"status": "renewed", "event_id": event.event_id}

    logger.info(
        "stripe_webhook_ignored",
        event_type=event.event_type,
        event_id=event.event_id,
    )
    return {"status": "ignored", "event_id": event.event_id}


# =============================================================================
# Ledger Event Stream
# =============================================================================


@router.get("/v1/billing/organizations/{organization_id}/events")
async def stream_ledger_events(
    organization_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_read_db),
    broker: LedgerEventBroker = Depends(get_event_broker),
    _: None = Depends(require_api_key),
) -> StreamingResponse:
    """
    Server-Sent Events stream of ledger-changed notifications.

    Events carry no balance; clients re-read the balance endpoint.
    """
    try:
        await OrganizationService(db).require(organization_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found",
        ) from exc

    return StreamingResponse(
        _event_stream(organization_id, request, broker),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Pricing
# =============================================================================


@router.get("/v1/billing/pricing", response_model=PricingResponse)
async def get_pricing(
    usage_units: int = Query(..., ge=0),
    currency: str = Query("GBP", min_length=3, max_length=3),
    billing_period: BillingPeriod = Query(BillingPeriod.MONTHLY),
    modules: list[str] | None = Query(None),
    _: None = Depends(require_api_key),
) -> PricingResponse:
    """Price a period of usage. Pure computation, no database access."""
    try:
        breakdown = pricing.price(usage_units, currency, billing_period, modules or ())
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    metrics.record_pricing_quote(breakdown.currency, breakdown.converted)
    return PricingResponse(
        tier_code=breakdown.tier_code,
        included_units=breakdown.included_units,
        usage_units=breakdown.usage_units,
        currency=breakdown.currency,
        billing_period=breakdown.billing_period,
        tier_price_minor=breakdown.tier_price_minor,
        overage_units=breakdown.overage_units,
        overage_unit_price_minor=breakdown.overage_unit_price_minor,
        overage_cost_minor=breakdown.overage_cost_minor,
        module_cost_minor=breakdown.module_cost_minor,
        total_minor=breakdown.total_minor,
        converted=breakdown.converted,
        conversion_rate=str(breakdown.conversion_rate) if breakdown.conversion_rate else None,
    )


@router.get("/v1/billing/pricing/packs", response_model=PackRecommendationResponse)
async def get_pack_recommendation(
    credits: int = Query(..., ge=1, le=10000),
    currency: str = Query("GBP", min_length=3, max_length=3),
    _: None = Depends(require_api_key),
) -> PackRecommendationResponse:
    """Cheapest top-up pack combination covering a credit shortfall."""
    try:
        recommendation = pricing.recommend_topup_packs(credits, currency)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    return PackRecommendationResponse(
        credits_needed=recommendation.credits_needed,
        credits_total=recommendation.credits_total,
        currency=recommendation.currency,
        total_minor=recommendation.total_minor,
        packs=[
            PackItem(credits=line.credits, count=line.count, price_minor=line.price_minor)
            for line in recommendation.packs
        ],
        converted=recommendation.converted,
    )


# =============================================================================
# Duplicate Identity
# =============================================================================


@router.get("/v1/billing/credits/aggregate", response_model=AggregateCreditsResponse)
async def aggregate_credits(
    identity_key: str = Query(..., min_length=1, max_length=255),
    db: AsyncSession = Depends(get_read_db),
    _: None = Depends(require_api_key),
) -> AggregateCreditsResponse:
    """
    Credits summed across organizations sharing a billing email.

    Read operation - duplicates are reported, never merged.
    """
    try:
        aggregate = await DuplicateIdentityAggregator(db).aggregate(identity_key)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    return AggregateCreditsResponse(
        identity_key=aggregate.identity_key,
        organizations=[
            OrganizationCreditsItem(
                organization_id=member.organization_id,
                name=member.name,
                credits=member.credits,
            )
            for member in aggregate.organizations
        ],
        total=aggregate.total,
        has_duplicates=aggregate.has_duplicates,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc


# =============================================================================
# Helpers
# =============================================================================


def _aware(value: datetime) -> datetime:
    """Query timestamps without an offset are taken as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _ledger_entry_response(entry: LedgerEntryData) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        kind=entry.kind,
        quantity=entry.quantity,
        source=entry.source,
        occurred_at=entry.occurred_at.isoformat(),
        created_at=entry.created_at.isoformat(),
        expires_at=entry.expires_at.isoformat() if entry.expires_at else None,
        notes=entry.notes,
    )


def _subscription_response(subscription: SubscriptionData) -> SubscriptionResponse:
    plan = subscription.plan
    return SubscriptionResponse(
        subscription_id=subscription.subscription_id,
        organization_id=subscription.organization_id,
        plan=PlanSnapshotResponse(
            code=plan.code,
            name=plan.name,
            included_credits=plan.included_credits,
            price_minor=plan.price_minor,
            currency=plan.currency,
            billing_period=plan.billing_period,
        ),
        status=subscription.status,
        current_period_start=subscription.current_period_start.isoformat(),
        current_period_end=subscription.current_period_end.isoformat(),
        cancel_at_period_end=subscription.cancel_at_period_end,
    )


def _reconcile_response(result: ReconcileResult) -> ReconcileResponse:
    return ReconcileResponse(
        processed=result.processed,
        already_processed=result.already_processed,
        credits_granted=result.credits_granted,
        status=result.status,
        session_status=result.session_status,
    )


def _sse_message(event: LedgerChanged) -> str:
    payload = LedgerChangedEvent(
        event_id=event.event_id,
        organization_id=event.organization_id,
        reason=event.reason,
        occurred_at=event.occurred_at.isoformat(),
    )
    return f"id: {event.event_id}\nevent: ledger_changed\ndata: {payload.model_dump_json()}\n\n"


async def _event_stream(
    organization_id: UUID, request: Request, broker: LedgerEventBroker
) -> AsyncIterator[str]:
    async with broker.subscribe(organization_id) as queue:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(
                    queue.get(), timeout=settings.event_keepalive_seconds
                )
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _sse_message(event)
