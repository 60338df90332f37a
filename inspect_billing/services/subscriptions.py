"""
Subscription Service - Plan activation, renewal grants, cancellation, usage and expiry.

Every operation that changes the ledger commits first and publishes a
LedgerChanged notification afterwards, so subscribers never see an event for a
write that was rolled back.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import calendar
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import distinct, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import LedgerEntry, Subscription, as_utc
from inspect_billing.exceptions import (
    IdempotencyConflictError,
    InsufficientCreditsError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    WriteVerificationError,
)
from inspect_billing.models.api import (
    BillingPeriod,
    LedgerKind,
    LedgerSource,
    SubscriptionStatus,
)
from inspect_billing.models.domain import (
    CancellationResult,
    LedgerEntryDraft,
    LedgerWriteResult,
    PlanSnapshot,
    SubscriptionData,
    SweepResult,
)
from inspect_billing.observability import metrics
from inspect_billing.services.balance import BalanceService, lapsed_batches
from inspect_billing.services.events import LedgerChanged, LedgerEventBroker, ledger_events
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.organizations import OrganizationService

logger = get_logger(__name__)


def add_period(moment: datetime, billing_period: BillingPeriod) -> datetime:
    """Advance by one billing period, clamping to the last day of shorter months."""
    months = 12 if billing_period == BillingPeriod.ANNUAL else 1
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def rollover_expiry(period_end: datetime, billing_period: BillingPeriod) -> datetime:
    """Unused subscription credits stay spendable for one further period."""
    return add_period(period_end, billing_period)


class SubscriptionService:
    """
    Subscription lifecycle and ledger writes outside checkout.

    Usage writes follow the pattern:
    1. Lock the organization row (SELECT FOR UPDATE)
    2. Compute the balance from the ledger
    3. Append the entry and verify
    4. Commit, then publish
    """

    def __init__(self, session: AsyncSession, broker: LedgerEventBroker | None = None) -> None:
        """Initialize subscription service with database session and event broker."""
        self.session = session
        self.broker = broker or ledger_events
        self.ledger = LedgerStore(session)
        self.balances = BalanceService(session)
        self.organizations = OrganizationService(session)

    async def get_subscription(self, organization_id: UUID) -> SubscriptionData | None:
        """
        Current subscription, or None when the organization never subscribed.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        await self.organizations.require(organization_id)
        row = await self._find_by_organization(organization_id)
        return self._to_domain(row) if row is not None else None

    async def activate(
        self,
        organization_id: UUID,
        snapshot: PlanSnapshot,
        period_start: datetime,
        provider_subscription_id: str | None = None,
        provider_customer_id: str | None = None,
        grant_key: str | None = None,
    ) -> SubscriptionData:
        """
        Create or replace the organization's subscription and grant its first period.

        The row is replaced in place with a fresh snapshot. Does NOT commit: the
        caller's transaction also holds the checkout claim.

        Raises:
            WriteVerificationError: Subscription not readable after flush
        """
        period_end = add_period(period_start, snapshot.billing_period)

        subscription = await self._find_by_organization(organization_id)
        if subscription is None:
            subscription = Subscription(organization_id=organization_id)
            self.session.add(subscription)

        subscription.plan_code = snapshot.code
        subscription.plan_name = snapshot.name
        subscription.plan_included_credits = snapshot.included_credits
        subscription.plan_price_minor = snapshot.price_minor
        subscription.plan_currency = snapshot.currency
        subscription.billing_period = snapshot.billing_period.value
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.cancel_at_period_end = False
        subscription.cancellation_reason = None
        subscription.cancellation_reason_text = None
        if provider_subscription_id is not None:
            subscription.provider_subscription_id = provider_subscription_id
        if provider_customer_id is not None:
            subscription.provider_customer_id = provider_customer_id

        await self.session.flush()

        verified = await self.session.get(Subscription, subscription.id)
        if verified is None:
            raise WriteVerificationError(f"Subscription for {organization_id} not found after upsert")

        await self.ledger.append(
            LedgerEntryDraft(
                organization_id=organization_id,
                kind=LedgerKind.GRANT,
                quantity=snapshot.credits_per_grant,
                source=LedgerSource.SUBSCRIPTION,
                occurred_at=period_start,
                expires_at=rollover_expiry(period_end, snapshot.billing_period),
                idempotency_key=grant_key,
                notes=f"{snapshot.name} plan",
            )
        )

        logger.info(
            "subscription_activated",
            organization_id=str(organization_id),
            plan_code=snapshot.code,
            billing_period=snapshot.billing_period.value,
            credits_granted=snapshot.credits_per_grant,
            period_end=period_end.isoformat(),
        )
        return self._to_domain(verified)

    async def renew(
        self,
        provider_subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        invoice_id: str,
    ) -> int:
        """
        Advance to a paid renewal period and grant its credits.

        A repeated invoice id grants nothing. Returns the credits granted by the
        invoice.

        Raises:
            SubscriptionNotFoundError: No subscription with this provider id
            SubscriptionStateError: Subscription already canceled
        """
        stmt = select(Subscription).where(
            Subscription.provider_subscription_id == provider_subscription_id
        )
        result = await self.session.execute(stmt)
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(provider_subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise SubscriptionStateError(
                subscription.organization_id, subscription.status, "renew"
            )

        organization_id = subscription.organization_id
        snapshot = self._snapshot(subscription)

        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.status = SubscriptionStatus.ACTIVE.value

        try:
            await self.ledger.append(
                LedgerEntryDraft(
                    organization_id=organization_id,
                    kind=LedgerKind.GRANT,
                    quantity=snapshot.credits_per_grant,
                    source=LedgerSource.SUBSCRIPTION,
                    occurred_at=period_start,
                    expires_at=rollover_expiry(period_end, snapshot.billing_period),
                    idempotency_key=f"renewal:{invoice_id}",
                    notes=f"{snapshot.name} plan renewal",
                )
            )
        except IdempotencyConflictError:
            logger.info(
                "subscription_renewal_already_granted",
                organization_id=str(organization_id),
                invoice_id=invoice_id,
            )
            return snapshot.credits_per_grant

        await self.session.commit()

        logger.info(
            "subscription_renewed",
            organization_id=str(organization_id),
            invoice_id=invoice_id,
            credits_granted=snapshot.credits_per_grant,
            period_end=period_end.isoformat(),
        )
        self.broker.publish(LedgerChanged(organization_id=organization_id, reason="renewal"))
        return snapshot.credits_per_grant

    async def cancel(
        self,
        organization_id: UUID,
        reason: str,
        reason_text: str | None = None,
        cancel_immediately: bool = False,
    ) -> CancellationResult:
        """
        Cancel now or at the end of the current period.

        Credits already granted keep their own expiry either way.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            SubscriptionNotFoundError: Organization has no subscription
            SubscriptionStateError: Subscription already canceled
        """
        await self.organizations.require(organization_id)
        subscription = await self._find_by_organization(organization_id)
        if subscription is None:
            raise SubscriptionNotFoundError(str(organization_id))
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise SubscriptionStateError(organization_id, subscription.status, "cancel")

        subscription.cancellation_reason = reason
        subscription.cancellation_reason_text = reason_text
        if cancel_immediately:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.cancel_at_period_end = False
            subscription.current_period_end = datetime.now(UTC)
        else:
            subscription.cancel_at_period_end = True

        await self.session.flush()
        verified = await self.session.get(Subscription, subscription.id)
        if verified is None:
            raise WriteVerificationError(f"Subscription {subscription.id} disappeared after update")

        await self.session.commit()

        logger.info(
            "subscription_cancelled",
            organization_id=str(organization_id),
            reason=reason,
            cancel_immediately=cancel_immediately,
        )
        return CancellationResult(
            cancelled_immediately=cancel_immediately,
            current_period_end=as_utc(verified.current_period_end),
        )

    async def consume_inspection(
        self, organization_id: UUID, inspection_ref: str, quantity: int = 1
    ) -> LedgerWriteResult:
        """
        Spend credits for one inspection.

        The organization row stays locked from the balance check to the commit, so
        concurrent usage for one organization cannot overspend. A repeated
        inspection_ref returns the original entry.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            InsufficientCreditsError: Available credits below quantity (nothing written)
        """
        idempotency_key = f"inspection:{inspection_ref}"
        await self.organizations.lock_for_update(organization_id)

        existing = await self.ledger.find_by_idempotency_key(organization_id, idempotency_key)
        if existing is not None:
            await self.session.rollback()
            return await self._replayed(existing.id, organization_id)

        now = datetime.now(UTC)
        balance = await self.balances.balance_unchecked(organization_id, now)
        if balance.available < quantity:
            await self.session.rollback()
            metrics.insufficient_credits_total.inc()
            logger.warning(
                "inspection_credit_insufficient",
                organization_id=str(organization_id),
                available=balance.available,
                required=quantity,
            )
            raise InsufficientCreditsError(balance.available, quantity)

        try:
            entry_id = await self.ledger.append(
                LedgerEntryDraft(
                    organization_id=organization_id,
                    kind=LedgerKind.CONSUME,
                    quantity=-quantity,
                    source=LedgerSource.USAGE,
                    occurred_at=now,
                    idempotency_key=idempotency_key,
                    notes=f"Inspection {inspection_ref}",
                )
            )
        except IdempotencyConflictError as exc:
            return await self._replayed(exc.existing_id, organization_id)

        await self.session.commit()

        logger.info(
            "inspection_credit_consumed",
            organization_id=str(organization_id),
            inspection_ref=inspection_ref,
            quantity=quantity,
            available=balance.available - quantity,
        )
        self.broker.publish(LedgerChanged(organization_id=organization_id, reason="usage"))
        return LedgerWriteResult(
            entry_id=entry_id,
            organization_id=organization_id,
            available=balance.available - quantity,
        )

    async def adjust(
        self,
        organization_id: UUID,
        quantity: int,
        notes: str,
        idempotency_key: str | None = None,
    ) -> LedgerWriteResult:
        """
        Append a manual correction.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            LedgerValidationError: quantity is zero
        """
        await self.organizations.require(organization_id)

        try:
            entry_id = await self.ledger.append(
                LedgerEntryDraft(
                    organization_id=organization_id,
                    kind=LedgerKind.ADJUSTMENT,
                    quantity=quantity,
                    source=LedgerSource.MANUAL,
                    occurred_at=datetime.now(UTC),
                    idempotency_key=idempotency_key,
                    notes=notes,
                )
            )
        except IdempotencyConflictError as exc:
            return await self._replayed(exc.existing_id, organization_id)

        await self.session.commit()

        logger.info(
            "ledger_adjustment_recorded",
            organization_id=str(organization_id),
            entry_id=str(entry_id),
            quantity=quantity,
        )
        self.broker.publish(LedgerChanged(organization_id=organization_id, reason="adjustment"))

        balance = await self.balances.balance_unchecked(organization_id)
        return LedgerWriteResult(
            entry_id=entry_id, organization_id=organization_id, available=balance.available
        )

    async def sweep_expired(self, as_of: datetime | None = None) -> SweepResult:
        """
        Write expire entries for batches past expiry that still hold credits.

        Each organization commits on its own. Re-running finds nothing left to
        retire, so the sweep is idempotent.
        """
        as_of = as_of or datetime.now(UTC)

        stmt = select(distinct(LedgerEntry.organization_id)).where(
            LedgerEntry.expires_at.is_not(None),
            LedgerEntry.expires_at < as_of,
        )
        result = await self.session.execute(stmt)
        organization_ids = list(result.scalars().all())

        batches_expired = 0
        credits_expired = 0
        for organization_id in organization_ids:
            entries = await self.ledger.list_by_organization(organization_id)
            sources = {entry.id: entry.source for entry in entries}
            lapsed = lapsed_batches(entries, as_of)
            if not lapsed:
                continue

            try:
                for batch in lapsed:
                    await self.ledger.append(
                        LedgerEntryDraft(
                            organization_id=organization_id,
                            kind=LedgerKind.EXPIRE,
                            quantity=-batch.remaining,
                            source=sources[batch.entry_id],
                            occurred_at=as_of,
                            idempotency_key=f"expire:{batch.entry_id}",
                            batch_id=batch.entry_id,
                            notes=f"Expired {batch.expires_at.date().isoformat()}",
                        )
                    )
            except IdempotencyConflictError:
                logger.info("expiry_sweep_concurrent_writer", organization_id=str(organization_id))
                continue

            await self.session.commit()

            retired = sum(batch.remaining for batch in lapsed)
            batches_expired += len(lapsed)
            credits_expired += retired
            metrics.credits_expired_total.inc(retired)
            logger.info(
                "credits_expired",
                organization_id=str(organization_id),
                batches=len(lapsed),
                credits=retired,
            )
            self.broker.publish(LedgerChanged(organization_id=organization_id, reason="expiry"))

        sweep = SweepResult(
            organizations_checked=len(organization_ids),
            batches_expired=batches_expired,
            credits_expired=credits_expired,
        )
        logger.info(
            "expiry_sweep_completed",
            organizations_checked=sweep.organizations_checked,
            batches_expired=sweep.batches_expired,
            credits_expired=sweep.credits_expired,
        )
        return sweep

    async def portal_customer(self, organization_id: UUID) -> str:
        """
        Provider customer reference for the billing portal.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
            SubscriptionNotFoundError: No subscription linked to a provider customer
        """
        await self.organizations.require(organization_id)
        subscription = await self._find_by_organization(organization_id)
        if subscription is None or not subscription.provider_customer_id:
            raise SubscriptionNotFoundError(str(organization_id))
        return subscription.provider_customer_id

    # ===== Private Helper Methods =====

    async def _find_by_organization(self, organization_id: UUID) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.organization_id == organization_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _replayed(self, entry_id: UUID, organization_id: UUID) -> LedgerWriteResult:
        balance = await self.balances.balance_unchecked(organization_id)
        logger.info(
            "ledger_write_replayed", organization_id=str(organization_id), entry_id=str(entry_id)
        )
        return LedgerWriteResult(
            entry_id=entry_id,
            organization_id=organization_id,
            available=balance.available,
            replayed=True,
        )

    @staticmethod
    def _snapshot(subscription: Subscription) -> PlanSnapshot:
        return PlanSnapshot(
            code=subscription.plan_code,
            name=subscription.plan_name,
            included_credits=subscription.plan_included_credits,
            price_minor=subscription.plan_price_minor,
            currency=subscription.plan_currency,
            billing_period=BillingPeriod(subscription.billing_period),
        )

    @classmethod
    def _to_domain(cls, subscription: Subscription) -> SubscriptionData:
        """Convert ORM model to domain model."""
        return SubscriptionData(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            plan=cls._snapshot(subscription),
            status=SubscriptionStatus(subscription.status),
            current_period_start=as_utc(subscription.current_period_start),
            current_period_end=as_utc(subscription.current_period_end),
            cancel_at_period_end=subscription.cancel_at_period_end,
            provider_subscription_id=subscription.provider_subscription_id,
        )
