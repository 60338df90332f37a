"""
Hypothesis Property-Based Tests for balance derivation.

The balance is a pure function of the ledger, so storage order and
re-evaluation must never change it.
"""

import random
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from hypothesis import given, settings
from hypothesis import strategies as st

from inspect_billing.models.api import LedgerKind, LedgerSource
from inspect_billing.models.domain import LedgerEntryData
from inspect_billing.services.balance import compute_balance, lapsed_batches

T0 = datetime(2026, 1, 1, tzinfo=UTC)
ORG = UUID(int=7)
HORIZON_DAYS = 120

# ============================================================================
# Hypothesis Strategies
# ============================================================================

days = st.integers(min_value=0, max_value=HORIZON_DAYS)
quantities = st.integers(min_value=1, max_value=200)


def _entry(kind, quantity, source, day, expires_day=None) -> LedgerEntryData:
    return LedgerEntryData(
        id=uuid4(),
        organization_id=ORG,
        kind=kind,
        quantity=quantity,
        source=source,
        occurred_at=T0 + timedelta(days=day),
        expires_at=T0 + timedelta(days=expires_day) if expires_day is not None else None,
        idempotency_key=None,
        batch_id=None,
        notes=None,
        created_at=T0 + timedelta(days=day),
    )


@st.composite
def ledger_entries(draw):
    """One grant, consume or adjustment entry. No expire entries."""
    choice = draw(st.sampled_from(["subscription", "topup", "consume", "credit", "debit"]))
    day = draw(days)
    quantity = draw(quantities)
    if choice == "subscription":
        lifetime = draw(st.integers(min_value=1, max_value=60))
        return _entry(LedgerKind.GRANT, quantity, LedgerSource.SUBSCRIPTION, day, day + lifetime)
    if choice == "topup":
        return _entry(LedgerKind.GRANT, quantity, LedgerSource.TOPUP, day)
    if choice == "consume":
        return _entry(LedgerKind.CONSUME, -quantity, LedgerSource.USAGE, day)
    if choice == "credit":
        return _entry(LedgerKind.ADJUSTMENT, quantity, LedgerSource.MANUAL, day)
    return _entry(LedgerKind.ADJUSTMENT, -quantity, LedgerSource.MANUAL, day)


ledgers = st.lists(ledger_entries(), max_size=30)
as_of_days = st.integers(min_value=0, max_value=HORIZON_DAYS * 2)


# ============================================================================
# Properties
# ============================================================================


class TestBalanceProperties:
    """Invariants of compute_balance."""

    @given(entries=ledgers, as_of_day=as_of_days, seed=st.integers())
    @settings(max_examples=100)
    def test_storage_order_irrelevant(self, entries, as_of_day, seed):
        """Any permutation of the same entries yields the same balance."""
        as_of = T0 + timedelta(days=as_of_day)
        shuffled = list(entries)
        random.Random(seed).shuffle(shuffled)

        assert compute_balance(shuffled, as_of) == compute_balance(entries, as_of)

    @given(entries=ledgers)
    @settings(max_examples=100)
    def test_conservation(self, entries):
        """Every credit added is available, expired or spent."""
        as_of = T0 + timedelta(days=HORIZON_DAYS * 2)
        added = sum(e.quantity for e in entries if e.quantity > 0)
        consumed = sum(-e.quantity for e in entries if e.kind == LedgerKind.CONSUME)
        removed = sum(-e.quantity for e in entries if e.kind == LedgerKind.ADJUSTMENT and e.quantity < 0)

        balance = compute_balance(entries, as_of)

        assert balance.consumed == consumed
        assert balance.available + balance.expired + consumed + removed == added

    @given(entries=ledgers, as_of_day=as_of_days)
    @settings(max_examples=100)
    def test_recomputation_is_stable(self, entries, as_of_day):
        """Computing twice gives the same answer."""
        as_of = T0 + timedelta(days=as_of_day)
        assert compute_balance(entries, as_of) == compute_balance(entries, as_of)

    @given(entries=ledgers, as_of_day=as_of_days)
    @settings(max_examples=100)
    def test_counts_never_negative(self, entries, as_of_day):
        """Consumed and expired are never negative."""
        balance = compute_balance(entries, T0 + timedelta(days=as_of_day))
        assert balance.consumed >= 0
        assert balance.expired >= 0

    @given(entries=ledgers, as_of_day=as_of_days)
    @settings(max_examples=100)
    def test_lapsed_batches_match_expired(self, entries, as_of_day):
        """Without expire entries, expired equals what lapsed batches still hold."""
        as_of = T0 + timedelta(days=as_of_day)
        lapsed = lapsed_batches(entries, as_of)

        assert sum(batch.remaining for batch in lapsed) == compute_balance(entries, as_of).expired
        assert all(batch.expires_at < as_of for batch in lapsed)

    @given(
        grants=st.lists(quantities, min_size=1, max_size=10),
        spend=st.integers(min_value=0, max_value=500),
    )
    @settings(max_examples=100)
    def test_non_expiring_credits_are_simple_arithmetic(self, grants, spend):
        """With top-ups only, available is added minus spent."""
        entries = [
            _entry(LedgerKind.GRANT, quantity, LedgerSource.TOPUP, day)
            for day, quantity in enumerate(grants)
        ]
        if spend:
            entries.append(_entry(LedgerKind.CONSUME, -spend, LedgerSource.USAGE, len(grants)))

        balance = compute_balance(entries, T0 + timedelta(days=HORIZON_DAYS))

        assert balance.available == sum(grants) - spend
        assert balance.expired == 0
