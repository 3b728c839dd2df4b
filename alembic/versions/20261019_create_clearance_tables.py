"""Create affiliate clearance tables

Revision ID: 20261019_clearance
Revises:
Create Date: 2026-10-19

Tables:
- clearance_criteria: one row per payment period
- affiliate_clearance_states: per-affiliate status and payment state per period
- clearance_events: append-only audit trail
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '20261019_clearance'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create clearance tables"""

    # ====================
    # CLEARANCE CRITERIA
    # ====================
    op.create_table(
        'clearance_criteria',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('period_number', sa.Integer, nullable=False,
                  comment='Monotonic period counter, the highest is current'),
        sa.Column('cutoff_date', sa.Date, nullable=True),
        sa.Column('minimum_amount_threshold', sa.Numeric(12, 2), nullable=True,
                  comment='Minimum unpaid amount for an affiliate to be eligible'),
        sa.Column('lifecycle_status', sa.String(50), server_default='OPEN', nullable=False,
                  comment='OPEN, LOCKED, COMPLETED'),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(100), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by', sa.String(100), nullable=True),
        sa.Column('forced_completion', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_index('ix_clearance_criteria_period_number', 'clearance_criteria', ['period_number'], unique=True)
    op.create_index('ix_clearance_criteria_lifecycle_status', 'clearance_criteria', ['lifecycle_status'])

    # ====================
    # AFFILIATE CLEARANCE STATES
    # ====================
    op.create_table(
        'affiliate_clearance_states',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('criteria_id', sa.Uuid(),
                  sa.ForeignKey('clearance_criteria.id', ondelete='CASCADE'), nullable=False),
        sa.Column('affiliate_id', sa.Integer, nullable=False),
        sa.Column('individual_status', sa.String(50), server_default='PENDING', nullable=False,
                  comment='PENDING, CLEARED, EXCLUDED'),
        sa.Column('payment_batch_state', sa.String(50), server_default='NONE', nullable=False,
                  comment='NONE, SCHEDULED, SETTLED'),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('scheduled_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_by', sa.String(100), nullable=True),
        sa.Column('settlement_claim_token', sa.String(64), nullable=True),
        sa.Column('settlement_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_by', sa.String(100), nullable=True),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('attempt_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('criteria_id', 'affiliate_id', name='uq_clearance_state_criteria_affiliate'),
    )

    op.create_index('ix_affiliate_clearance_states_criteria_id', 'affiliate_clearance_states', ['criteria_id'])
    op.create_index('ix_affiliate_clearance_states_affiliate_id', 'affiliate_clearance_states', ['affiliate_id'])
    op.create_index('ix_clearance_state_payment', 'affiliate_clearance_states',
                    ['criteria_id', 'payment_batch_state'])

    # ====================
    # CLEARANCE EVENTS
    # ====================
    op.create_table(
        'clearance_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('criteria_id', sa.Uuid(), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('affiliate_id', sa.Integer, nullable=True),
        sa.Column('operator', sa.String(100), nullable=True),
        sa.Column('payload', sa.JSON, nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_index('ix_clearance_events_criteria_id', 'clearance_events', ['criteria_id'])
    op.create_index('ix_clearance_events_event_type', 'clearance_events', ['event_type'])
    op.create_index('ix_clearance_events_affiliate_id', 'clearance_events', ['affiliate_id'])
    op.create_index('ix_clearance_events_created_at', 'clearance_events', ['created_at'])


def downgrade():
    """Drop clearance tables"""
    op.drop_table('clearance_events')
    op.drop_table('affiliate_clearance_states')
    op.drop_table('clearance_criteria')
