"""
Duplicate-Identity Aggregator - Sums credits across organizations sharing a billing email.

Read-only. Duplicate organizations are surfaced for administrative resolution and
never merged here.
"""

from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import Organization
from inspect_billing.exceptions import ValidationError
from inspect_billing.models.domain import AggregateCredits, OrganizationCredits
from inspect_billing.services.balance import BalanceService

logger = get_logger(__name__)


def normalize_identity(identity_key: str) -> str:
    """Case-insensitive, whitespace-trimmed email identity."""
    return identity_key.strip().lower()


class DuplicateIdentityAggregator:
    """Groups organizations by normalized billing email."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize aggregator with database session."""
        self.session = session
        self.balances = BalanceService(session)

    async def aggregate(
        self, identity_key: str, as_of: datetime | None = None
    ) -> AggregateCredits:
        """
        Sum available credits of every organization under one identity.

        An identity with no organizations yields an empty result with total 0.

        Raises:
            ValidationError: identity_key is blank
        """
        normalized = normalize_identity(identity_key)
        if not normalized:
            raise ValidationError("identity_key", "must not be blank")

        as_of = as_of or datetime.now(UTC)

        stmt = (
            select(Organization)
            .where(func.lower(func.trim(Organization.billing_email)) == normalized)
            .order_by(Organization.created_at.asc(), Organization.id.asc())
        )
        result = await self.session.execute(stmt)
        organizations = result.scalars().all()

        members: list[OrganizationCredits] = []
        for organization in organizations:
            balance = await self.balances.balance_unchecked(organization.id, as_of)
            members.append(
                OrganizationCredits(
                    organization_id=organization.id,
                    name=organization.name,
                    credits=balance.available,
                )
            )

        aggregate = AggregateCredits(
            identity_key=normalized,
            organizations=tuple(members),
            total=sum(m.credits for m in members),
        )

        if aggregate.has_duplicates:
            logger.warning(
                "duplicate_billing_identity_detected",
                organization_count=len(members),
                organization_ids=[str(m.organization_id) for m in members],
            )

        return aggregate
