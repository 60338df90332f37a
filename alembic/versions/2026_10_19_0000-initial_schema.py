"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create organizations, ledger, subscription and checkout tables."""

    # ========================================================================
    # Create organizations table
    # ========================================================================
    op.create_table(
        'organizations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('billing_email', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # Duplicate-identity lookups compare lower-cased emails
    op.create_index(
        'idx_organizations_billing_email_lower',
        'organizations',
        [sa.text('lower(billing_email)')],
    )

    # ========================================================================
    # Create ledger_entries table (append-only)
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('batch_id', UUID(as_uuid=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('quantity <> 0', name='ck_ledger_quantity_non_zero'),
        sa.CheckConstraint("kind IN ('grant', 'consume', 'expire', 'adjustment')", name='ck_ledger_kind'),
        sa.CheckConstraint("source IN ('subscription', 'topup', 'manual', 'usage')", name='ck_ledger_source'),
        sa.UniqueConstraint('organization_id', 'idempotency_key', name='uq_ledger_idempotency'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_ledger_organization', ondelete='RESTRICT'),
    )

    op.create_index('idx_ledger_org_occurred', 'ledger_entries', ['organization_id', 'occurred_at'])
    op.create_index('idx_ledger_expires_at', 'ledger_entries', ['expires_at'], postgresql_where=sa.text('expires_at IS NOT NULL'))

    # ========================================================================
    # Create subscriptions table (one current row per organization)
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_code', sa.String(50), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False),
        sa.Column('plan_included_credits', sa.Integer(), nullable=False),
        sa.Column('plan_price_minor', sa.BigInteger(), nullable=False),
        sa.Column('plan_currency', sa.String(3), nullable=False),
        sa.Column('billing_period', sa.String(10), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancellation_reason', sa.String(100), nullable=True),
        sa.Column('cancellation_reason_text', sa.Text(), nullable=True),
        sa.Column('provider_subscription_id', sa.String(255), nullable=True),
        sa.Column('provider_customer_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('plan_included_credits > 0', name='ck_subscription_credits_positive'),
        sa.CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'incomplete', 'canceled')",
            name='ck_subscription_status',
        ),
        sa.UniqueConstraint('organization_id', name='uq_subscription_organization'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_subscriptions_organization', ondelete='RESTRICT'),
    )

    op.create_index('idx_subscriptions_provider_id', 'subscriptions', ['provider_subscription_id'])

    # ========================================================================
    # Create checkout_sessions table
    # ========================================================================
    op.create_table(
        'checkout_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider_session_id', sa.String(255), nullable=False),
        sa.Column('organization_id', UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('reconcile_state', sa.String(20), nullable=False, server_default='open'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credits_quantity', sa.Integer(), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('plan_code', sa.String(50), nullable=True),
        sa.Column('plan_name', sa.String(100), nullable=True),
        sa.Column('plan_included_credits', sa.Integer(), nullable=True),
        sa.Column('billing_period', sa.String(10), nullable=True),
        sa.Column('credits_granted', sa.Integer(), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("kind IN ('subscription', 'topup', 'quotation')", name='ck_checkout_kind'),
        sa.CheckConstraint("status IN ('open', 'completed', 'expired')", name='ck_checkout_status'),
        sa.CheckConstraint(
            "reconcile_state IN ('open', 'processing', 'processed', 'failed')",
            name='ck_checkout_reconcile_state',
        ),
        sa.CheckConstraint('credits_quantity > 0', name='ck_checkout_credits_positive'),
        sa.CheckConstraint('amount_minor >= 0', name='ck_checkout_amount_non_negative'),
        sa.UniqueConstraint('provider_session_id', name='uq_checkout_provider_session'),
        sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], name='fk_checkout_organization', ondelete='RESTRICT'),
    )

    op.create_index('idx_checkout_sessions_organization_id', 'checkout_sessions', ['organization_id'])
    op.create_index('idx_checkout_sessions_processed_at', 'checkout_sessions', ['processed_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('checkout_sessions')
    op.drop_table('subscriptions')
    op.drop_table('ledger_entries')
    op.drop_table('organizations')
