"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from inspect_billing.models.api import (
    BillingPeriod,
    CheckoutKind,
    CheckoutStatus,
    LedgerKind,
    LedgerSource,
    ReconcileState,
    SubscriptionStatus,
)


@dataclass(frozen=True)
class LedgerEntryDraft:
    """Ledger entry before persistence. Validated by the ledger store."""

    organization_id: UUID
    kind: LedgerKind | str
    quantity: int
    source: LedgerSource | str
    occurred_at: datetime
    expires_at: datetime | None = None
    idempotency_key: str | None = None
    batch_id: UUID | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger fact as stored."""

    id: UUID
    organization_id: UUID
    kind: LedgerKind
    quantity: int
    source: LedgerSource
    occurred_at: datetime
    expires_at: datetime | None
    idempotency_key: str | None
    batch_id: UUID | None
    notes: str | None
    created_at: datetime


@dataclass(frozen=True)
class CreditBalance:
    """Credit counts derived from the ledger."""

    available: int
    consumed: int
    expired: int


@dataclass(frozen=True)
class OrganizationData:
    """Organization as returned by services."""

    organization_id: UUID
    name: str
    billing_email: str
    created_at: datetime


@dataclass(frozen=True)
class PlanSnapshot:
    """Plan frozen at subscribe time. Never follows later plan edits."""

    code: str
    name: str
    included_credits: int
    price_minor: int
    currency: str
    billing_period: BillingPeriod

    def __post_init__(self) -> None:
        """Validate snapshot constraints."""
        if self.included_credits <= 0:
            raise ValueError(f"included_credits must be positive: {self.included_credits}")
        if self.price_minor < 0:
            raise ValueError(f"price_minor cannot be negative: {self.price_minor}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")

    @property
    def credits_per_grant(self) -> int:
        """Credits granted for one billing period."""
        if self.billing_period == BillingPeriod.ANNUAL:
            return self.included_credits * 12
        return self.included_credits


@dataclass(frozen=True)
class SubscriptionData:
    """Subscription as returned by services."""

    subscription_id: UUID
    organization_id: UUID
    plan: PlanSnapshot
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    provider_subscription_id: str | None


@dataclass(frozen=True)
class CancellationResult:
    """Outcome of a cancellation request."""

    cancelled_immediately: bool
    current_period_end: datetime


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one checkout session."""

    processed: bool
    already_processed: bool
    credits_granted: int | None
    status: ReconcileState
    session_status: CheckoutStatus = CheckoutStatus.OPEN

    @property
    def settled(self) -> bool:
        """True once the session's effect has been applied by anyone."""
        return self.processed or self.already_processed

    @property
    def terminal(self) -> bool:
        """Nothing further can happen to the session."""
        return self.settled or self.session_status == CheckoutStatus.EXPIRED


@dataclass(frozen=True)
class CheckoutData:
    """Locally recorded checkout session."""

    provider_session_id: str
    organization_id: UUID
    kind: CheckoutKind
    url: str
    amount_minor: int
    currency: str
    credits_quantity: int


@dataclass(frozen=True)
class OrganizationCredits:
    """One organization's available credits."""

    organization_id: UUID
    name: str
    credits: int


@dataclass(frozen=True)
class AggregateCredits:
    """Credits summed across organizations sharing a billing identity."""

    identity_key: str
    organizations: tuple[OrganizationCredits, ...]
    total: int

    @property
    def has_duplicates(self) -> bool:
        """More than one organization shares the identity."""
        return len(self.organizations) > 1


@dataclass(frozen=True)
class SweepResult:
    """Counts from one expiry sweep."""

    organizations_checked: int
    batches_expired: int
    credits_expired: int


@dataclass(frozen=True)
class LedgerWriteResult:
    """Entry written (or replayed) by a usage or adjustment call."""

    entry_id: UUID
    organization_id: UUID
    available: int
    replayed: bool = False
