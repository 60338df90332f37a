"""
Tests for SubscriptionService.

Runs against SQLite so locking, idempotency keys and commits behave as in production.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from inspect_billing.exceptions import (
    InsufficientCreditsError,
    LedgerValidationError,
    OrganizationNotFoundError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from inspect_billing.models.api import BillingPeriod, LedgerKind, LedgerSource, SubscriptionStatus
from inspect_billing.models.domain import PlanSnapshot
from inspect_billing.services.balance import BalanceService
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.subscriptions import (
    SubscriptionService,
    add_period,
    rollover_expiry,
)


def growth_plan(period: BillingPeriod = BillingPeriod.MONTHLY) -> PlanSnapshot:
    return PlanSnapshot(
        code="growth",
        name="Growth",
        included_credits=30,
        price_minor=12900,
        currency="GBP",
        billing_period=period,
    )


async def subscribe(service, organization_id, period_start=None, period=BillingPeriod.MONTHLY):
    """Activate Growth and commit."""
    data = await service.activate(
        organization_id,
        growth_plan(period),
        period_start or datetime.now(UTC),
        provider_subscription_id="sub_test_1",
        provider_customer_id="cus_test_1",
        grant_key=f"checkout:{uuid4()}",
    )
    await service.session.commit()
    return data


class TestPeriodArithmetic:
    """Tests for add_period and rollover_expiry."""

    def test_monthly(self):
        """One calendar month later."""
        start = datetime(2026, 3, 15, 9, 30, tzinfo=UTC)
        assert add_period(start, BillingPeriod.MONTHLY) == datetime(2026, 4, 15, 9, 30, tzinfo=UTC)

    def test_month_end_clamped(self):
        """January 31st renews on the last day of February."""
        start = datetime(2026, 1, 31, tzinfo=UTC)
        assert add_period(start, BillingPeriod.MONTHLY) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_year_wrap(self):
        """December rolls into January of the next year."""
        start = datetime(2026, 12, 10, tzinfo=UTC)
        assert add_period(start, BillingPeriod.MONTHLY) == datetime(2027, 1, 10, tzinfo=UTC)

    def test_annual_leap_day(self):
        """February 29th renews on February 28th."""
        start = datetime(2028, 2, 29, tzinfo=UTC)
        assert add_period(start, BillingPeriod.ANNUAL) == datetime(2029, 2, 28, tzinfo=UTC)

    def test_rollover_is_one_more_period(self):
        """Credits remain usable for the period after the one they were granted for."""
        end = datetime(2026, 5, 1, tzinfo=UTC)
        assert rollover_expiry(end, BillingPeriod.MONTHLY) == datetime(2026, 6, 1, tzinfo=UTC)


class TestActivate:
    """Tests for activate() and get_subscription()."""

    async def test_creates_subscription_and_grant(self, session, organization, broker):
        """First activation writes the row and one expiring subscription grant."""
        service = SubscriptionService(session, broker)
        start = datetime.now(UTC)

        data = await subscribe(service, organization.id, start)

        assert data.status == SubscriptionStatus.ACTIVE
        assert data.plan.code == "growth"
        assert data.current_period_end == add_period(start, BillingPeriod.MONTHLY)

        entries = await LedgerStore(session).list_by_organization(organization.id)
        assert len(entries) == 1
        assert entries[0].kind == LedgerKind.GRANT
        assert entries[0].source == LedgerSource.SUBSCRIPTION
        assert entries[0].quantity == 30
        assert entries[0].expires_at == rollover_expiry(
            data.current_period_end, BillingPeriod.MONTHLY
        )

        fetched = await service.get_subscription(organization.id)
        assert fetched is not None
        assert fetched.subscription_id == data.subscription_id
        assert fetched.provider_subscription_id == "sub_test_1"

    async def test_annual_grants_twelve_months(self, session, organization, broker):
        """Annual plans grant a year of credits up front."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id, period=BillingPeriod.ANNUAL)

        balance = await BalanceService(session).get_balance(organization.id)
        assert balance.available == 360

    async def test_reactivation_replaces_row(self, session, organization, broker):
        """Subscribing again reuses the organization's single row."""
        service = SubscriptionService(session, broker)
        first = await subscribe(service, organization.id)
        second = await subscribe(service, organization.id)
        assert first.subscription_id == second.subscription_id

    async def test_no_subscription(self, session, organization):
        """An organization that never subscribed has none."""
        assert await SubscriptionService(session).get_subscription(organization.id) is None

    async def test_unknown_organization(self, session):
        """Missing organizations raise."""
        with pytest.raises(OrganizationNotFoundError):
            await SubscriptionService(session).get_subscription(uuid4())


class TestRenew:
    """Tests for renew()."""

    async def test_renewal_grants_once_per_invoice(self, session, organization, broker):
        """A repeated invoice grants nothing more."""
        service = SubscriptionService(session, broker)
        start = datetime.now(UTC) - timedelta(days=31)
        await subscribe(service, organization.id, start)

        period_start = datetime.now(UTC) - timedelta(minutes=1)
        period_end = add_period(period_start, BillingPeriod.MONTHLY)
        granted = await service.renew("sub_test_1", period_start, period_end, "in_1")
        repeated = await service.renew("sub_test_1", period_start, period_end, "in_1")

        assert granted == repeated == 30
        grants = [
            e
            for e in await LedgerStore(session).list_by_organization(organization.id)
            if e.kind == LedgerKind.GRANT
        ]
        assert len(grants) == 2

        subscription = await service.get_subscription(organization.id)
        assert subscription.current_period_end == period_end

    async def test_unknown_subscription(self, session):
        """An unknown provider subscription raises."""
        now = datetime.now(UTC)
        with pytest.raises(SubscriptionNotFoundError):
            await SubscriptionService(session).renew("sub_missing", now, now, "in_x")

    async def test_canceled_subscription(self, session, organization, broker):
        """Canceled subscriptions are not renewed."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)
        await service.cancel(organization.id, "too_expensive", cancel_immediately=True)

        now = datetime.now(UTC)
        with pytest.raises(SubscriptionStateError):
            await service.renew("sub_test_1", now, now + timedelta(days=30), "in_2")


class TestCancel:
    """Tests for cancel()."""

    async def test_cancel_at_period_end(self, session, organization, broker):
        """Without immediate, the subscription stays active until the period ends."""
        service = SubscriptionService(session, broker)
        data = await subscribe(service, organization.id)

        result = await service.cancel(organization.id, "switching_provider", "Moving in-house")

        assert result.cancelled_immediately is False
        assert result.current_period_end == data.current_period_end
        subscription = await service.get_subscription(organization.id)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.cancel_at_period_end is True

    async def test_cancel_immediately(self, session, organization, broker):
        """Immediate cancellation ends the period now and keeps granted credits."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)

        result = await service.cancel(organization.id, "closing", cancel_immediately=True)

        assert result.cancelled_immediately is True
        assert result.current_period_end <= datetime.now(UTC)
        subscription = await service.get_subscription(organization.id)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert (await BalanceService(session).get_balance(organization.id)).available == 30

    async def test_cancel_twice(self, session, organization, broker):
        """A canceled subscription cannot be canceled again."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)
        await service.cancel(organization.id, "closing", cancel_immediately=True)

        with pytest.raises(SubscriptionStateError):
            await service.cancel(organization.id, "closing")

    async def test_cancel_without_subscription(self, session, organization):
        """Nothing to cancel."""
        with pytest.raises(SubscriptionNotFoundError):
            await SubscriptionService(session).cancel(organization.id, "closing")


class TestConsumeInspection:
    """Tests for consume_inspection()."""

    async def test_insufficient_credits_writes_nothing(self, session, organization, broker):
        """At zero available the call raises and the ledger is unchanged."""
        service = SubscriptionService(session, broker)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await service.consume_inspection(organization.id, "insp-1")

        assert exc_info.value.available == 0
        assert exc_info.value.required == 1
        assert await LedgerStore(session).list_by_organization(organization.id) == []

    async def test_consume_decrements_and_publishes(self, session, organization, broker):
        """A funded inspection appends one consume entry and notifies subscribers."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)

        async with broker.subscribe(organization.id) as queue:
            result = await service.consume_inspection(organization.id, "insp-1", quantity=2)
            event = queue.get_nowait()

        assert result.available == 28
        assert result.replayed is False
        assert event.reason == "usage"
        assert event.organization_id == organization.id

    async def test_repeated_inspection_replays(self, session, organization, broker):
        """The same inspection_ref is charged once."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)

        first = await service.consume_inspection(organization.id, "insp-7")
        second = await service.consume_inspection(organization.id, "insp-7")

        assert second.replayed is True
        assert second.entry_id == first.entry_id
        balance = await BalanceService(session).get_balance(organization.id)
        assert balance.available == 29
        assert balance.consumed == 1

    async def test_unknown_organization(self, session):
        """Missing organizations raise before any balance check."""
        with pytest.raises(OrganizationNotFoundError):
            await SubscriptionService(session).consume_inspection(uuid4(), "insp-1")


class TestAdjust:
    """Tests for adjust()."""

    async def test_positive_and_negative(self, session, organization, broker):
        """Corrections move the balance either way."""
        service = SubscriptionService(session, broker)

        credited = await service.adjust(organization.id, 10, "Goodwill credit")
        debited = await service.adjust(organization.id, -3, "Correction")

        assert credited.available == 10
        assert debited.available == 7

    async def test_idempotency_key(self, session, organization, broker):
        """A repeated key does not apply twice."""
        service = SubscriptionService(session, broker)
        first = await service.adjust(organization.id, 10, "Goodwill", idempotency_key="adj-1")
        second = await service.adjust(organization.id, 10, "Goodwill", idempotency_key="adj-1")

        assert first.entry_id == second.entry_id
        assert second.available == 10

    async def test_zero_rejected(self, session, organization):
        """Zero-quantity corrections are invalid."""
        with pytest.raises(LedgerValidationError):
            await SubscriptionService(session).adjust(organization.id, 0, "Nothing")


class TestSweepExpired:
    """Tests for sweep_expired()."""

    async def test_sweep_is_idempotent(self, session, organization, broker):
        """A second sweep finds nothing and the balance is unchanged."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id, datetime.now(UTC) - timedelta(days=70))
        now = datetime.now(UTC)
        before = await BalanceService(session).get_balance(organization.id, now)

        async with broker.subscribe(organization.id) as queue:
            first = await service.sweep_expired(now)
            assert queue.get_nowait().reason == "expiry"
        second = await service.sweep_expired(now)

        assert first.batches_expired == 1
        assert first.credits_expired == 30
        assert second.batches_expired == 0
        assert second.credits_expired == 0

        after = await BalanceService(session).get_balance(organization.id, now)
        assert after == before
        assert after.expired == 30

        expire_entries = [
            e
            for e in await LedgerStore(session).list_by_organization(organization.id)
            if e.kind == LedgerKind.EXPIRE
        ]
        assert len(expire_entries) == 1
        assert expire_entries[0].quantity == -30
        assert expire_entries[0].source == LedgerSource.SUBSCRIPTION

    async def test_nothing_to_sweep(self, session, organization, broker):
        """Credits inside their window are untouched."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)

        result = await service.sweep_expired()

        assert result.organizations_checked == 0
        assert result.batches_expired == 0


class TestPortalCustomer:
    """Tests for portal_customer()."""

    async def test_returns_customer(self, session, organization, broker):
        """The provider customer from activation is returned."""
        service = SubscriptionService(session, broker)
        await subscribe(service, organization.id)
        assert await service.portal_customer(organization.id) == "cus_test_1"

    async def test_without_subscription(self, session, organization):
        """No subscription, no portal."""
        with pytest.raises(SubscriptionNotFoundError):
            await SubscriptionService(session).portal_customer(organization.id)
