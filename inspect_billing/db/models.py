"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps read back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Organization(Base):
    """
    ORM model for organizations table.

    The billing email is the identity shared by duplicate organizations.
    """

    __tablename__ = "organizations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    billing_email: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_organizations_billing_email_lower", func.lower(billing_email)),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Organization(id={self.id}, name={self.name})>"


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only record of balance-affecting events. Rows are never updated or deleted.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id"), nullable=False
    )

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Grant entry retired by an expire entry
    batch_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_ledger_quantity_non_zero"),
        CheckConstraint(
            "kind IN ('grant', 'consume', 'expire', 'adjustment')", name="ck_ledger_kind"
        ),
        CheckConstraint(
            "source IN ('subscription', 'topup', 'manual', 'usage')", name="ck_ledger_source"
        ),
        UniqueConstraint("organization_id", "idempotency_key", name="uq_ledger_idempotency"),
        Index("idx_ledger_org_occurred", "organization_id", "occurred_at"),
        Index("idx_ledger_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, organization_id={self.organization_id}, "
            f"kind={self.kind}, quantity={self.quantity})>"
        )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One current subscription per organization. Plan columns are a snapshot taken at
    subscribe time.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id"), nullable=False, unique=True
    )

    # Plan snapshot
    plan_code: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_included_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    plan_price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    plan_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(10), nullable=False)

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancellation_reason_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("plan_included_credits > 0", name="ck_subscription_credits_positive"),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'incomplete', 'canceled')",
            name="ck_subscription_status",
        ),
        Index("idx_subscriptions_provider_id", "provider_subscription_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, organization_id={self.organization_id}, "
            f"plan={self.plan_code}, status={self.status})>"
        )


class CheckoutSession(Base):
    """
    ORM model for checkout_sessions table.

    processed_at is the idempotency guard: it is set exactly once, by a conditional update.
    """

    __tablename__ = "checkout_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provider_session_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    organization_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id"), nullable=False, index=True
    )

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    reconcile_state: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # What the session buys, frozen at creation
    credits_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    plan_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    plan_included_credits: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billing_period: Mapped[str | None] = mapped_column(String(10), nullable=True)

    credits_granted: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("kind IN ('subscription', 'topup', 'quotation')", name="ck_checkout_kind"),
        CheckConstraint("status IN ('open', 'completed', 'expired')", name="ck_checkout_status"),
        CheckConstraint(
            "reconcile_state IN ('open', 'processing', 'processed', 'failed')",
            name="ck_checkout_reconcile_state",
        ),
        CheckConstraint("credits_quantity > 0", name="ck_checkout_credits_positive"),
        CheckConstraint("amount_minor >= 0", name="ck_checkout_amount_non_negative"),
        Index("idx_checkout_sessions_processed_at", "processed_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CheckoutSession(provider_session_id={self.provider_session_id}, "
            f"kind={self.kind}, reconcile_state={self.reconcile_state})>"
        )
