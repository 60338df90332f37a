"""
Tests for the duplicate-identity aggregator.
"""

from datetime import UTC, datetime, timedelta

import pytest

from inspect_billing.db.models import Organization
from inspect_billing.exceptions import ValidationError
from inspect_billing.models.api import LedgerKind, LedgerSource
from inspect_billing.models.domain import LedgerEntryDraft
from inspect_billing.services.identity import DuplicateIdentityAggregator, normalize_identity
from inspect_billing.services.ledger import LedgerStore


async def add_organization(session, name: str, email: str, credits: int) -> Organization:
    """Persist an organization holding a top-up of credits."""
    organization = Organization(name=name, billing_email=email)
    session.add(organization)
    await session.flush()
    if credits:
        await LedgerStore(session).append(
            LedgerEntryDraft(
                organization_id=organization.id,
                kind=LedgerKind.GRANT,
                quantity=credits,
                source=LedgerSource.TOPUP,
                occurred_at=datetime.now(UTC) - timedelta(minutes=1),
            )
        )
    await session.commit()
    return organization


class TestNormalizeIdentity:
    """Tests for normalize_identity."""

    def test_case_and_whitespace(self):
        """Emails compare case-insensitively without surrounding space."""
        assert normalize_identity("  Billing@Acme.TEST ") == "billing@acme.test"


class TestDuplicateIdentityAggregator:
    """Tests for aggregate()."""

    async def test_sums_duplicates(self, session):
        """Organizations sharing an email are listed and summed."""
        first = await add_organization(session, "Acme North", "ops@acme.test", 30)
        second = await add_organization(session, "Acme South", "OPS@acme.test", 12)
        await add_organization(session, "Elsewhere", "ops@other.test", 99)

        aggregate = await DuplicateIdentityAggregator(session).aggregate("Ops@Acme.test")

        assert aggregate.identity_key == "ops@acme.test"
        assert aggregate.total == 42
        assert aggregate.has_duplicates is True
        assert {m.organization_id for m in aggregate.organizations} == {first.id, second.id}

    async def test_single_organization(self, session):
        """One organization is not a duplicate."""
        await add_organization(session, "Solo", "solo@acme.test", 5)

        aggregate = await DuplicateIdentityAggregator(session).aggregate("solo@acme.test")

        assert aggregate.total == 5
        assert aggregate.has_duplicates is False

    async def test_unknown_identity(self, session):
        """An identity with no organizations totals zero."""
        aggregate = await DuplicateIdentityAggregator(session).aggregate("nobody@acme.test")
        assert aggregate.organizations == ()
        assert aggregate.total == 0

    async def test_blank_identity(self, session):
        """A blank key is rejected."""
        with pytest.raises(ValidationError):
            await DuplicateIdentityAggregator(session).aggregate("   ")
