"""
Ledger Store - Append-only record of balance-affecting events.

There is no update or delete. Corrections are new adjustment entries.
append() never commits: the caller owns the transaction so that a grant and the
state change that caused it land together.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import LedgerEntry, as_utc
from inspect_billing.exceptions import (
    IdempotencyConflictError,
    LedgerValidationError,
    WriteVerificationError,
)
from inspect_billing.models.api import LedgerKind, LedgerSource
from inspect_billing.models.domain import LedgerEntryData, LedgerEntryDraft
from inspect_billing.observability import metrics

logger = get_logger(__name__)


def validate_draft(draft: LedgerEntryDraft) -> tuple[LedgerKind, LedgerSource]:
    """
    Check a draft before it is written.

    Raises:
        LedgerValidationError: zero quantity, unknown kind or source, wrong sign,
            or an expiry that precedes the entry
    """
    try:
        kind = LedgerKind(draft.kind)
    except ValueError as exc:
        raise LedgerValidationError("kind", f"unknown ledger kind {draft.kind!r}") from exc

    try:
        source = LedgerSource(draft.source)
    except ValueError as exc:
        raise LedgerValidationError("source", f"unknown ledger source {draft.source!r}") from exc

    if draft.quantity == 0:
        raise LedgerValidationError("quantity", "must not be zero")

    if kind == LedgerKind.GRANT and draft.quantity < 0:
        raise LedgerValidationError("quantity", f"grant must be positive, got {draft.quantity}")
    if kind in (LedgerKind.CONSUME, LedgerKind.EXPIRE) and draft.quantity > 0:
        raise LedgerValidationError(
            "quantity", f"{kind.value} must be negative, got {draft.quantity}"
        )

    if draft.expires_at is not None:
        if kind == LedgerKind.GRANT or (kind == LedgerKind.ADJUSTMENT and draft.quantity > 0):
            if draft.expires_at <= draft.occurred_at:
                raise LedgerValidationError("expires_at", "must be after occurred_at")
        else:
            raise LedgerValidationError("expires_at", f"not allowed on {kind.value} entries")

    if draft.batch_id is not None and kind != LedgerKind.EXPIRE:
        raise LedgerValidationError("batch_id", "only expire entries may reference a batch")

    return kind, source


class LedgerStore:
    """
    Append-only ledger access.

    Writes follow the pattern:
    1. Validate the draft
    2. Return the existing entry for a repeated idempotency key
    3. Insert and flush
    4. Read back and verify
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger store with database session."""
        self.session = session

    async def append(self, draft: LedgerEntryDraft) -> UUID:
        """
        Append one entry and return its id.

        A repeated idempotency key for the same organization returns the original id
        and writes nothing.

        Raises:
            LedgerValidationError: Draft is malformed (nothing written)
            IdempotencyConflictError: A concurrent transaction committed the same key
                first; this session has been rolled back
            WriteVerificationError: Entry not readable after flush
        """
        kind, source = validate_draft(draft)

        if draft.idempotency_key:
            existing = await self._find_by_idempotency(draft.organization_id, draft.idempotency_key)
            if existing is not None:
                logger.info(
                    "ledger_entry_idempotent_replay",
                    organization_id=str(draft.organization_id),
                    idempotency_key=draft.idempotency_key,
                    entry_id=str(existing.id),
                )
                return existing.id

        entry = LedgerEntry(
            organization_id=draft.organization_id,
            kind=kind.value,
            quantity=draft.quantity,
            source=source.value,
            occurred_at=draft.occurred_at,
            expires_at=draft.expires_at,
            idempotency_key=draft.idempotency_key,
            batch_id=draft.batch_id,
            notes=draft.notes,
        )
        self.session.add(entry)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            # Race - same key committed by another transaction
            await self.session.rollback()
            if draft.idempotency_key:
                existing = await self._find_by_idempotency(
                    draft.organization_id, draft.idempotency_key
                )
                if existing is not None:
                    raise IdempotencyConflictError(existing.id) from exc
            raise WriteVerificationError(f"Ledger insert rejected: {exc.orig}") from exc

        verified = await self.session.get(LedgerEntry, entry.id)
        if verified is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

        metrics.record_ledger_entry(kind.value, source.value, draft.quantity)
        logger.info(
            "ledger_entry_appended",
            organization_id=str(draft.organization_id),
            entry_id=str(entry.id),
            kind=kind.value,
            source=source.value,
            quantity=draft.quantity,
        )
        return verified.id

    async def list_by_organization(
        self, organization_id: UUID, since: datetime | None = None
    ) -> list[LedgerEntryData]:
        """
        Entries for one organization, ascending by occurred_at.

        Pass the last seen occurred_at as since (inclusive) to resume a read.
        """
        stmt = select(LedgerEntry).where(LedgerEntry.organization_id == organization_id)
        if since is not None:
            stmt = stmt.where(LedgerEntry.occurred_at >= since)
        stmt = stmt.order_by(LedgerEntry.occurred_at.asc(), LedgerEntry.id.asc())

        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def list_for_display(
        self, organization_id: UUID, since: datetime | None = None, limit: int = 100
    ) -> list[LedgerEntryData]:
        """Entries newest first, for the ledger view."""
        stmt = select(LedgerEntry).where(LedgerEntry.organization_id == organization_id)
        if since is not None:
            stmt = stmt.where(LedgerEntry.occurred_at >= since)
        stmt = stmt.order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc()).limit(limit)

        result = await self.session.execute(stmt)
        return [self._to_domain(row) for row in result.scalars().all()]

    async def find_by_idempotency_key(
        self, organization_id: UUID, idempotency_key: str
    ) -> LedgerEntryData | None:
        """Entry previously written under a key, if any."""
        row = await self._find_by_idempotency(organization_id, idempotency_key)
        return self._to_domain(row) if row is not None else None

    # ===== Private Helper Methods =====

    async def _find_by_idempotency(
        self, organization_id: UUID, idempotency_key: str
    ) -> LedgerEntry | None:
        """Find an entry by its per-organization idempotency key."""
        stmt = select(LedgerEntry).where(
            LedgerEntry.organization_id == organization_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_domain(row: LedgerEntry) -> LedgerEntryData:
        """Convert ORM row to domain model."""
        return LedgerEntryData(
            id=row.id,
            organization_id=row.organization_id,
            kind=LedgerKind(row.kind),
            quantity=row.quantity,
            source=LedgerSource(row.source),
            occurred_at=as_utc(row.occurred_at),
            expires_at=as_utc(row.expires_at) if row.expires_at else None,
            idempotency_key=row.idempotency_key,
            batch_id=row.batch_id,
            notes=row.notes,
            created_at=as_utc(row.created_at),
        )
