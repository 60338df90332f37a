"""
Checkout Session Reconciler - Applies a paid checkout session exactly once.

Reached from two independent triggers, the Stripe webhook and the client
confirmation endpoint. Both converge on one conditional UPDATE of processed_at;
whichever caller changes the row applies the effect, every other caller reports
already_processed.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import time
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import CheckoutSession
from inspect_billing.exceptions import (
    PaymentProviderError,
    ProviderUnavailableError,
    SessionNotFoundError,
)
from inspect_billing.models.api import (
    BillingPeriod,
    CheckoutKind,
    CheckoutStatus,
    LedgerKind,
    LedgerSource,
    ReconcileState,
)
from inspect_billing.models.domain import LedgerEntryDraft, PlanSnapshot, ReconcileResult
from inspect_billing.observability import metrics, trace_operation
from inspect_billing.observability.tracing import set_outcome
from inspect_billing.services.events import LedgerChanged, LedgerEventBroker, ledger_events
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.payment_provider import PaymentProvider, ProviderSession
from inspect_billing.services.subscriptions import SubscriptionService

logger = get_logger(__name__)


class CheckoutReconciler:
    """
    Converges local checkout state with the payment provider.

    Reconcile follows the pattern:
    1. Load the local session (already processed is a successful no-op)
    2. Fetch the provider's view under a bounded timeout
    3. Claim with a conditional UPDATE ... WHERE processed_at IS NULL
    4. Apply the grant in the same transaction, then commit
    5. Publish a ledger-changed notification
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider,
        broker: LedgerEventBroker | None = None,
    ) -> None:
        """Initialize reconciler with database session, payment provider and event broker."""
        self.session = session
        self.provider = provider
        self.broker = broker or ledger_events
        self.ledger = LedgerStore(session)
        self.subscriptions = SubscriptionService(session, self.broker)

    async def reconcile(self, provider_session_id: str) -> ReconcileResult:
        """
        Apply a checkout session's effect if it is paid and not yet applied.

        Raises:
            SessionNotFoundError: No local record of the session
            ProviderUnavailableError: Provider could not be reached; session stays retryable
        """
        start = time.monotonic()
        with trace_operation("checkout_reconcile", provider_session_id=provider_session_id) as span:
            row = await self._load(provider_session_id)
            kind = row.kind

            if row.processed_at is not None:
                result = self._already_processed(row)
                self._record(kind, "already_processed", start)
                set_outcome(span, "already_processed")
                return result

            try:
                remote = await self.provider.fetch_session(provider_session_id)
            except PaymentProviderError as exc:
                await self._record_failure(row.id, str(exc))
                self._record(kind, "provider_unavailable", start)
                metrics.record_error("ProviderUnavailableError", "checkout_reconcile")
                logger.warning(
                    "checkout_reconcile_provider_unavailable",
                    provider_session_id=provider_session_id,
                    error=str(exc),
                )
                raise ProviderUnavailableError(provider_session_id, str(exc)) from exc

            if remote.is_expired:
                await self._update_unprocessed(row.id, status=CheckoutStatus.EXPIRED.value)
                await self.session.commit()
                self._record(kind, "expired", start)
                set_outcome(span, "expired")
                logger.info("checkout_session_expired", provider_session_id=provider_session_id)
                return ReconcileResult(
                    processed=False,
                    already_processed=False,
                    credits_granted=None,
                    status=ReconcileState(row.reconcile_state),
                    session_status=CheckoutStatus.EXPIRED,
                )

            if not remote.is_paid:
                await self._update_unprocessed(
                    row.id, reconcile_state=ReconcileState.PROCESSING.value
                )
                await self.session.commit()
                self._record(kind, "pending", start)
                set_outcome(span, "pending")
                logger.info(
                    "checkout_session_not_paid",
                    provider_session_id=provider_session_id,
                    status=remote.status,
                    payment_status=remote.payment_status,
                )
                return ReconcileResult(
                    processed=False,
                    already_processed=False,
                    credits_granted=None,
                    status=ReconcileState.PROCESSING,
                )

            self._check_amount(row, remote)

            now = datetime.now(UTC)
            if not await self._claim(row, now):
                # A concurrent caller won the claim
                await self.session.rollback()
                winner = await self._load(provider_session_id)
                self._record(kind, "already_processed", start)
                set_outcome(span, "lost_claim")
                logger.info("checkout_claim_lost", provider_session_id=provider_session_id)
                return self._already_processed(winner)

            try:
                credits = await self._apply(row, remote, now)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                metrics.record_error("ReconcileApplyFailed", "checkout_reconcile")
                raise

            self._record(kind, "processed", start)
            set_outcome(span, "processed", credits_granted=credits)
            logger.info(
                "checkout_session_processed",
                provider_session_id=provider_session_id,
                organization_id=str(row.organization_id),
                kind=kind,
                credits_granted=credits,
            )
            self.broker.publish(LedgerChanged(organization_id=row.organization_id, reason="checkout"))

            return ReconcileResult(
                processed=True,
                already_processed=False,
                credits_granted=credits,
                status=ReconcileState.PROCESSED,
                session_status=CheckoutStatus.COMPLETED,
            )

    async def mark_expired(self, provider_session_id: str) -> bool:
        """
        Record that the provider expired a session. Processed sessions are left alone.

        Raises:
            SessionNotFoundError: No local record of the session
        """
        row = await self._load(provider_session_id)
        changed = await self._update_unprocessed(row.id, status=CheckoutStatus.EXPIRED.value)
        await self.session.commit()
        logger.info(
            "checkout_session_marked_expired",
            provider_session_id=provider_session_id,
            changed=changed,
        )
        return changed

    # ===== Private Helper Methods =====

    async def _load(self, provider_session_id: str) -> CheckoutSession:
        # Claims bypass the identity map, so always read the stored row
        stmt = (
            select(CheckoutSession)
            .where(CheckoutSession.provider_session_id == provider_session_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise SessionNotFoundError(provider_session_id)
        return row

    async def _claim(self, row: CheckoutSession, now: datetime) -> bool:
        """Single conditional UPDATE; True only for the caller that changed the row."""
        stmt = (
            update(CheckoutSession)
            .where(CheckoutSession.id == row.id, CheckoutSession.processed_at.is_(None))
            .values(
                processed_at=now,
                reconcile_state=ReconcileState.PROCESSED.value,
                status=CheckoutStatus.COMPLETED.value,
                credits_granted=row.credits_quantity,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def _apply(self, row: CheckoutSession, remote: ProviderSession, now: datetime) -> int:
        """Write the session's effect. Returns credits granted."""
        grant_key = f"checkout:{row.provider_session_id}"

        if row.kind == CheckoutKind.TOPUP.value:
            await self.ledger.append(
                LedgerEntryDraft(
                    organization_id=row.organization_id,
                    kind=LedgerKind.GRANT,
                    quantity=row.credits_quantity,
                    source=LedgerSource.TOPUP,
                    occurred_at=now,
                    idempotency_key=grant_key,
                    notes=f"Top-up of {row.credits_quantity} credits",
                )
            )
            return row.credits_quantity

        snapshot = PlanSnapshot(
            code=row.plan_code or row.kind,
            name=row.plan_name or row.kind.title(),
            included_credits=row.plan_included_credits or row.credits_quantity,
            price_minor=row.amount_minor,
            currency=row.currency,
            billing_period=BillingPeriod(row.billing_period or BillingPeriod.MONTHLY.value),
        )
        await self.subscriptions.activate(
            row.organization_id,
            snapshot,
            period_start=now,
            provider_subscription_id=remote.subscription_id,
            provider_customer_id=remote.customer_id,
            grant_key=grant_key,
        )
        return snapshot.credits_per_grant

    async def _update_unprocessed(self, row_id: UUID, **values: Any) -> bool:
        """Update a session only while it is unprocessed, so a winner is never overwritten."""
        stmt = (
            update(CheckoutSession)
            .where(CheckoutSession.id == row_id, CheckoutSession.processed_at.is_(None))
            .values(updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def _record_failure(self, row_id: UUID, error: str) -> None:
        """Persist the failure on its own so the session stays retryable."""
        await self.session.rollback()
        await self._update_unprocessed(
            row_id,
            reconcile_state=ReconcileState.FAILED.value,
            failure_count=CheckoutSession.failure_count + 1,
            last_error=error[:1000],
        )
        await self.session.commit()

    @staticmethod
    def _check_amount(row: CheckoutSession, remote: ProviderSession) -> None:
        if remote.amount_minor is not None and remote.amount_minor != row.amount_minor:
            logger.warning(
                "checkout_amount_mismatch",
                provider_session_id=row.provider_session_id,
                recorded_minor=row.amount_minor,
                provider_minor=remote.amount_minor,
            )
        if remote.currency is not None and remote.currency != row.currency:
            logger.warning(
                "checkout_currency_mismatch",
                provider_session_id=row.provider_session_id,
                recorded=row.currency,
                provider=remote.currency,
            )

    @staticmethod
    def _already_processed(row: CheckoutSession) -> ReconcileResult:
        return ReconcileResult(
            processed=False,
            already_processed=True,
            credits_granted=row.credits_granted,
            status=ReconcileState.PROCESSED,
            session_status=CheckoutStatus.COMPLETED,
        )

    @staticmethod
    def _record(kind: str, outcome: str, start: float) -> None:
        metrics.record_reconciliation(kind, outcome, time.monotonic() - start)
