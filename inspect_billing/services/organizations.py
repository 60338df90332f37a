"""
Organization Service - Lookup, creation and row locking for organizations.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from inspect_billing.db.models import Organization, as_utc
from inspect_billing.exceptions import OrganizationNotFoundError, WriteVerificationError
from inspect_billing.models.domain import OrganizationData

logger = get_logger(__name__)


class OrganizationService:
    """Organization access shared by the billing services."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize organization service with database session."""
        self.session = session

    async def create(self, name: str, billing_email: str) -> OrganizationData:
        """
        Create an organization.

        Organizations sharing a billing email are allowed; they are reported by the
        duplicate-identity aggregator rather than rejected here.
        """
        organization = Organization(name=name, billing_email=billing_email)
        self.session.add(organization)
        await self.session.flush()

        verified = await self.session.get(Organization, organization.id)
        if verified is None:
            raise WriteVerificationError(f"Organization {organization.id} not found after insert")

        await self.session.commit()

        logger.info("organization_created", organization_id=str(verified.id))
        return self.to_domain(verified)

    async def require(self, organization_id: UUID) -> Organization:
        """
        Get organization or raise.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        organization = await self.session.get(Organization, organization_id)
        if organization is None:
            raise OrganizationNotFoundError(organization_id)
        return organization

    async def lock_for_update(self, organization_id: UUID) -> Organization:
        """
        Lock organization row (SELECT FOR UPDATE).

        Serializes usage for one organization until the transaction ends.

        Raises:
            OrganizationNotFoundError: Organization doesn't exist
        """
        stmt = select(Organization).where(Organization.id == organization_id).with_for_update()
        result = await self.session.execute(stmt)
        organization = result.scalar_one_or_none()
        if organization is None:
            raise OrganizationNotFoundError(organization_id)
        return organization

    @staticmethod
    def to_domain(organization: Organization) -> OrganizationData:
        """Convert ORM model to domain model."""
        return OrganizationData(
            organization_id=organization.id,
            name=organization.name,
            billing_email=organization.billing_email,
            created_at=as_utc(organization.created_at),
        )
