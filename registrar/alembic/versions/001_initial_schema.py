"""001_initial_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

Initial schema for registrations, payments and refunds:
- Accounts: guardians, players, teams
- Entries: season_registrations, tournament_registrations
- Normalized registrations (identity lock via charge_attempt_id)
- Payments: charge_attempts (intent journal), payments, refunds, payment_status_history
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        'guardians',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('idx_guardians_email', 'guardians', ['email'])

    op.create_table(
        'players',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('guardian_id', sa.Integer(), sa.ForeignKey('guardians.id'), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('school_name', sa.String(), nullable=True),
        sa.Column('grade', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_players_guardian_id', 'players', ['guardian_id'])

    op.create_table(
        'teams',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('guardian_id', sa.Integer(), sa.ForeignKey('guardians.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('grade', sa.String(5), nullable=True),
        sa.Column('sex', sa.String(10), nullable=True),
        sa.Column('level_of_competition', sa.String(20), nullable=False, server_default='Gold'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index('idx_teams_guardian_id', 'teams', ['guardian_id'])

    op.create_table(
        'season_registrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('players.id', ondelete='CASCADE'), nullable=False),
        sa.Column('season', sa.String(20), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('tryout_id', sa.String(100), nullable=False),
        sa.Column('registration_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('package_type', sa.String(50), nullable=True),
        sa.Column('amount_paid', sa.Integer(), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('player_id', 'season', 'year', 'tryout_id', name='uq_season_registration_identity'),
    )
    op.create_index('idx_season_registrations_lookup', 'season_registrations', ['season', 'year', 'tryout_id'])

    op.create_table(
        'tournament_registrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('tournament', sa.String(100), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('tournament_id', sa.String(100), nullable=False),
        sa.Column('registration_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_complete', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('level_of_competition', sa.String(20), nullable=False, server_default='Gold'),
        sa.Column('amount_paid', sa.Integer(), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            'team_id', 'tournament', 'year', 'tournament_id', name='uq_tournament_registration_identity'
        ),
    )

    op.create_table(
        'charge_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('idempotency_key', sa.String(64), nullable=False, unique=True),
        sa.Column('guardian_id', sa.Integer(), sa.ForeignKey('guardians.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('buyer_email', sa.String(), nullable=False),
        sa.Column('registration_ids', sa.Text(), nullable=False),
        sa.Column('package_type', sa.String(50), nullable=True),
        sa.Column('location_id', sa.String(100), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_exp_month', sa.String(2), nullable=True),
        sa.Column('card_exp_year', sa.String(4), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='started'),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('gateway_status', sa.String(50), nullable=True),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_charge_attempts_status_created', 'charge_attempts', ['status', 'created_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=False, unique=True),
        sa.Column('guardian_id', sa.Integer(), sa.ForeignKey('guardians.id'), nullable=False),
        sa.Column('idempotency_key', sa.String(64), nullable=True),
        sa.Column('location_id', sa.String(100), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('card_brand', sa.String(50), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_exp_month', sa.String(2), nullable=True),
        sa.Column('card_exp_year', sa.String(4), nullable=True),
        sa.Column('refunded_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_status', sa.String(20), nullable=False, server_default='none'),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('review_note', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        sa.CheckConstraint('refunded_amount <= amount', name='ck_payments_no_over_refund'),
    )
    op.create_index('idx_payments_guardian_id', 'payments', ['guardian_id'])
    op.create_index('idx_payments_status_refund_status', 'payments', ['status', 'refund_status'])
    op.create_index('idx_payments_created_at', 'payments', ['created_at'])

    op.create_table(
        'registrations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('subject_type', sa.String(20), nullable=False),
        sa.Column('subject_id', sa.Integer(), nullable=False),
        sa.Column('guardian_id', sa.Integer(), sa.ForeignKey('guardians.id'), nullable=False),
        sa.Column('label', sa.String(100), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(100), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('amount_paid', sa.Integer(), nullable=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
        sa.Column('charge_attempt_id', sa.Integer(), sa.ForeignKey('charge_attempts.id'), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'subject_type', 'subject_id', 'label', 'year', 'event_id', name='uq_registration_identity'
        ),
    )
    op.create_index('idx_registrations_guardian_id', 'registrations', ['guardian_id'])
    op.create_index('idx_registrations_payment_status', 'registrations', ['payment_status'])
    op.create_index('idx_registrations_charge_attempt_id', 'registrations', ['charge_attempt_id'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('gateway_refund_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('source', sa.String(20), nullable=False, server_default='gateway_sync'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('payment_id', 'gateway_refund_id', name='uq_refunds_gateway_refund_id'),
        sa.CheckConstraint('amount > 0', name='ck_refunds_amount_positive'),
    )

    op.create_table(
        'payment_status_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('reason', sa.String(500), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_payment_status_history_payment_id', 'payment_status_history', ['payment_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payment_status_history')
    op.drop_table('refunds')
    op.drop_table('registrations')
    op.drop_table('payments')
    op.drop_table('charge_attempts')
    op.drop_table('tournament_registrations')
    op.drop_table('season_registrations')
    op.drop_table('teams')
    op.drop_table('players')
    op.drop_table('guardians')
