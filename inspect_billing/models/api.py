"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class LedgerKind(str, Enum):
    """Ledger entry kind enumeration."""

    GRANT = "grant"
    CONSUME = "consume"
    EXPIRE = "expire"
    ADJUSTMENT = "adjustment"


class LedgerSource(str, Enum):
    """What produced a ledger entry."""

    SUBSCRIPTION = "subscription"
    TOPUP = "topup"
    MANUAL = "manual"
    USAGE = "usage"


class BillingPeriod(str, Enum):
    """Billing period enumeration."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    CANCELED = "canceled"


class CheckoutKind(str, Enum):
    """What a checkout session purchases."""

    SUBSCRIPTION = "subscription"
    TOPUP = "topup"
    QUOTATION = "quotation"


class CheckoutStatus(str, Enum):
    """Checkout session status as reported by the provider."""

    OPEN = "open"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ReconcileState(str, Enum):
    """Local reconciliation state of a checkout session."""

    OPEN = "open"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# ============================================================================
# Organization Models
# ============================================================================


class CreateOrganizationRequest(BaseModel):
    """POST /v1/billing/organizations request body."""

    name: str = Field(..., min_length=1, max_length=255)
    billing_email: str = Field(..., min_length=3, max_length=255)

    @field_validator("billing_email")
    @classmethod
    def validate_billing_email(cls, v: str) -> str:
        """Require something that looks like an email address."""
        if "@" not in v:
            raise ValueError("billing_email must be an email address")
        return v.strip()


class OrganizationResponse(BaseModel):
    """Organization details."""

    organization_id: UUID
    name: str
    billing_email: str
    created_at: str


# ============================================================================
# Balance & Ledger Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/billing/organizations/{id}/balance response."""

    organization_id: UUID
    available: int
    consumed: int
    expired: int
    as_of: str


class LedgerEntryResponse(BaseModel):
    """Single ledger entry for display."""

    id: UUID
    kind: LedgerKind
    quantity: int
    source: LedgerSource
    occurred_at: str
    created_at: str
    expires_at: str | None = None
    notes: str | None = None


class LedgerListResponse(BaseModel):
    """Ledger entries ordered newest first."""

    organization_id: UUID
    entries: list[LedgerEntryResponse]
    total_count: int


class AdjustmentRequest(BaseModel):
    """POST /v1/billing/organizations/{id}/adjustments request body."""

    quantity: int = Field(..., description="Signed credit correction, never zero")
    notes: str = Field(..., min_length=1, max_length=1000)
    idempotency_key: str | None = Field(None, max_length=255)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        """Reject zero-quantity corrections."""
        if v == 0:
            raise ValueError("quantity must not be zero")
        return v


class LedgerEntryCreatedResponse(BaseModel):
    """Returned after a ledger write."""

    entry_id: UUID
    organization_id: UUID
    available: int


class ConsumeRequest(BaseModel):
    """POST /v1/billing/organizations/{id}/inspections/consume request body."""

    inspection_ref: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(default=1, ge=1, le=1000)


# ============================================================================
# Subscription Models
# ============================================================================


class PlanSnapshotResponse(BaseModel):
    """Plan as frozen at subscribe time."""

    code: str
    name: str
    included_credits: int
    price_minor: int
    currency: str
    billing_period: BillingPeriod


class SubscriptionResponse(BaseModel):
    """GET /v1/billing/organizations/{id}/subscription response."""

    subscription_id: UUID
    organization_id: UUID
    plan: PlanSnapshotResponse
    status: SubscriptionStatus
    current_period_start: str
    current_period_end: str
    cancel_at_period_end: bool


class CancelSubscriptionRequest(BaseModel):
    """POST /v1/billing/organizations/{id}/subscription/cancel request body."""

    reason: str = Field(..., min_length=1, max_length=100)
    reason_text: str | None = Field(None, max_length=2000)
    cancel_immediately: bool = False


class CancelSubscriptionResponse(BaseModel):
    """Cancellation outcome."""

    cancelled_immediately: bool
    current_period_end: str


# ============================================================================
# Checkout Models
# ============================================================================


class CreateCheckoutRequest(BaseModel):
    """POST /v1/billing/organizations/{id}/checkout request body."""

    kind: CheckoutKind
    currency: str = Field(default="GBP", min_length=3, max_length=3)
    billing_period: BillingPeriod = BillingPeriod.MONTHLY

    # subscription
    tier_code: str | None = Field(None, max_length=50)

    # topup
    credits: int | None = Field(None, ge=1, le=10000)

    # quotation
    quoted_price_minor: int | None = Field(None, gt=0)
    quoted_inspections: int | None = Field(None, gt=0)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Normalize currency codes to upper case."""
        return v.upper()

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "CreateCheckoutRequest":
        """Each checkout kind needs its own fields."""
        if self.kind == CheckoutKind.SUBSCRIPTION and not self.tier_code:
            raise ValueError("tier_code is required for subscription checkout")
        if self.kind == CheckoutKind.TOPUP and self.credits is None:
            raise ValueError("credits is required for topup checkout")
        if self.kind == CheckoutKind.QUOTATION and (
            self.quoted_price_minor is None or self.quoted_inspections is None
        ):
            raise ValueError(
                "quoted_price_minor and quoted_inspections are required for quotation checkout"
            )
        return self


class CheckoutResponse(BaseModel):
    """Created checkout session."""

    session_id: str
    url: str
    kind: CheckoutKind
    amount_minor: int
    currency: str
    credits: int


class PortalResponse(BaseModel):
    """Billing portal link."""

    url: str


class ReconcileRequest(BaseModel):
    """POST /v1/billing/sessions/reconcile request body."""

    provider_session_id: str = Field(..., min_length=1, max_length=255)
    wait: bool = Field(default=False, description="Poll the provider until the session settles")


class ReconcileResponse(BaseModel):
    """Reconciliation outcome. already_processed is a success."""

    processed: bool
    already_processed: bool
    credits_granted: int | None = None
    status: ReconcileState
    session_status: CheckoutStatus = CheckoutStatus.OPEN


# ============================================================================
# Pricing Models
# ============================================================================


class PricingResponse(BaseModel):
    """GET /v1/billing/pricing response."""

    tier_code: str
    included_units: int
    usage_units: int
    currency: str
    billing_period: BillingPeriod
    tier_price_minor: int
    overage_units: int
    overage_unit_price_minor: int
    overage_cost_minor: int
    module_cost_minor: int
    total_minor: int
    converted: bool
    conversion_rate: str | None = None


class PackItem(BaseModel):
    """Pack size and how many to buy."""

    credits: int
    count: int
    price_minor: int


class PackRecommendationResponse(BaseModel):
    """GET /v1/billing/pricing/packs response."""

    credits_needed: int
    credits_total: int
    currency: str
    total_minor: int
    packs: list[PackItem]
    converted: bool


# ============================================================================
# Duplicate Identity Models
# ============================================================================


class OrganizationCreditsItem(BaseModel):
    """One organization under a shared billing identity."""

    organization_id: UUID
    name: str
    credits: int


class AggregateCreditsResponse(BaseModel):
    """GET /v1/billing/credits/aggregate response."""

    identity_key: str
    organizations: list[OrganizationCreditsItem]
    total: int
    has_duplicates: bool


# ============================================================================
# Ledger Event Stream
# ============================================================================


class LedgerChangedEvent(BaseModel):
    """Server-sent notification that an organization's ledger changed. Carries no balance."""

    event_id: UUID
    organization_id: UUID
    reason: str
    occurred_at: str


# ============================================================================
# Health Check
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
