"""
Balance Aggregator - Derives credit counts from the ledger on every read.

Nothing is cached: the balance is a pure function of the ledger entries and the
as-of instant, so it is correct for any consistent prefix of the ledger.

Walk order is (occurred_at, credits before debits, id), never storage order.
Debits draw from expiring (subscription) batches first, oldest grant first, then
from non-expiring batches (top-ups, manual credits), oldest grant first.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.models.api import LedgerKind
from inspect_billing.models.domain import CreditBalance, LedgerEntryData
from inspect_billing.services.ledger import LedgerStore
from inspect_billing.services.organizations import OrganizationService

logger = get_logger(__name__)


@dataclass
class _Batch:
    """Remaining quantity of one credit-adding entry."""

    entry_id: UUID
    granted_at: datetime
    expires_at: datetime | None
    remaining: int

    def eligible_at(self, at: datetime) -> bool:
        return self.remaining > 0 and (self.expires_at is None or at <= self.expires_at)


@dataclass(frozen=True)
class LapsedBatch:
    """Quantity still held by a batch whose expiry has passed."""

    entry_id: UUID
    expires_at: datetime
    remaining: int


@dataclass
class _WalkState:
    batches: list[_Batch]
    deficit: int = 0
    consumed: int = 0
    expired: int = 0


def _sort_key(entry: LedgerEntryData) -> tuple[datetime, int, UUID]:
    if entry.quantity > 0:
        rank = 0
    elif entry.kind == LedgerKind.EXPIRE:
        rank = 2
    else:
        rank = 1
    return (entry.occurred_at, rank, entry.id)


def _debit(batches: list[_Batch], amount: int, at: datetime) -> int:
    """Draw amount from eligible batches; return the unfunded remainder."""
    # Stable sort keeps grant order inside each group, regardless of expiry date
    eligible = sorted(
        (b for b in batches if b.eligible_at(at)),
        key=lambda b: b.expires_at is None,
    )
    for batch in eligible:
        if amount == 0:
            break
        taken = min(batch.remaining, amount)
        batch.remaining -= taken
        amount -= taken
    return amount


def _walk(entries: Iterable[LedgerEntryData], as_of: datetime) -> _WalkState:
    state = _WalkState(batches=[])
    by_id: dict[UUID, _Batch] = {}

    for entry in sorted((e for e in entries if e.occurred_at <= as_of), key=_sort_key):
        if entry.quantity > 0:
            quantity = entry.quantity
            if state.deficit:
                absorbed = min(state.deficit, quantity)
                state.deficit -= absorbed
                quantity -= absorbed
            batch = _Batch(entry.id, entry.occurred_at, entry.expires_at, quantity)
            state.batches.append(batch)
            by_id[entry.id] = batch
            continue

        amount = -entry.quantity

        if entry.kind == LedgerKind.EXPIRE:
            if entry.batch_id is not None:
                target = by_id.get(entry.batch_id)
                retired = min(target.remaining, amount) if target else 0
                if target:
                    target.remaining -= retired
            else:
                retired = amount - _debit(state.batches, amount, entry.occurred_at)
            state.expired += retired
            continue

        state.deficit += _debit(state.batches, amount, entry.occurred_at)
        if entry.kind == LedgerKind.CONSUME:
            state.consumed += amount

    return state


def compute_balance(entries: Iterable[LedgerEntryData], as_of: datetime) -> CreditBalance:
    """
    Derive available, consumed and expired credits as of an instant.

    Entries after as_of are ignored. A batch whose expiry has passed at as_of moves
    its remaining quantity from available to expired. Debits that no batch could
    fund are carried as a deficit and reduce available.
    """
    state = _walk(entries, as_of)

    available = 0
    expired = state.expired
    for batch in state.batches:
        if batch.remaining <= 0:
            continue
        if batch.expires_at is not None and as_of > batch.expires_at:
            expired += batch.remaining
        else:
            available += batch.remaining

    return CreditBalance(
        available=available - state.deficit,
        consumed=state.consumed,
        expired=expired,
    )


def lapsed_batches(entries: Iterable[LedgerEntryData], as_of: datetime) -> list[LapsedBatch]:
    """Batches past expiry at as_of that still hold credits, oldest first."""
    state = _walk(entries, as_of)
    return [
        LapsedBatch(entry_id=b.entry_id, expires_at=b.expires_at, remaining=b.remaining)
        for b in state.batches
        if b.remaining > 0 and b.expires_at is not None and as_of > b.expires_at
    ]


class BalanceService:
    """Reads an organization's ledger and computes its balance."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize balance service with database session."""
        self.session = session
        self.ledger = LedgerStore(session)
        self.organizations = OrganizationService(session)

    async def get_balance(
        self, organization_id: UUID, as_of: datetime | None = None
    ) -> CreditBalance:
        """
        Compute the balance for one organization.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        await self.organizations.require(organization_id)
        return await self.balance_unchecked(organization_id, as_of)

    async def balance_unchecked(
        self, organization_id: UUID, as_of: datetime | None = None
    ) -> CreditBalance:
        """Compute the balance without confirming the organization exists."""
        as_of = as_of or datetime.now(UTC)
        entries = await self.ledger.list_by_organization(organization_id)
        balance = compute_balance(entries, as_of)

        logger.debug(
            "balance_computed",
            organization_id=str(organization_id),
            available=balance.available,
            consumed=balance.consumed,
            expired=balance.expired,
            entries=len(entries),
        )
        return balance
