"""create loyalty tables

Revision ID: 5c1e0a7d2f41
Revises:
Create Date: 2026-10-19 09:12:33.504118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e0a7d2f41'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'business_profiles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('business_name', sa.Text(), nullable=False),
        sa.Column('city', sa.Text(), nullable=False),
        sa.Column('logo', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'city_admins',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('city', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'city', name='uq_city_admins_user_city'),
    )

    op.create_table(
        'app_users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('wallet_pass_id', sa.Text(), nullable=False, unique=True),
        sa.Column('first_name', sa.Text(), nullable=True),
        sa.Column('last_name', sa.Text(), nullable=True),
        sa.Column('email', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'loyalty_programs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('public_id', sa.Text(), nullable=False, unique=True),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('business_profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('city', sa.Text(), nullable=False),
        sa.Column('program_name', sa.Text(), nullable=True),
        sa.Column('type', sa.Text(), nullable=False, server_default='stamps'),
        sa.Column('reward_threshold', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('reward_description', sa.Text(), nullable=False, server_default=''),
        sa.Column('stamp_label', sa.Text(), nullable=False, server_default='Stamps'),
        sa.Column('stamp_icon', sa.Text(), nullable=False, server_default='stamp'),
        sa.Column('earn_mode', sa.Text(), nullable=False, server_default='per_visit'),
        sa.Column('earn_instructions', sa.Text(), nullable=True),
        sa.Column('redeem_instructions', sa.Text(), nullable=True),
        sa.Column('terms_and_conditions', sa.Text(), nullable=True),
        sa.Column('primary_color', sa.Text(), nullable=True),
        sa.Column('background_color', sa.Text(), nullable=True),
        sa.Column('logo_url', sa.Text(), nullable=True),
        sa.Column('strip_image_url', sa.Text(), nullable=True),
        sa.Column('walletpush_template_id', sa.Text(), nullable=True),
        sa.Column('walletpush_api_key', sa.Text(), nullable=True),
        sa.Column('walletpush_pass_type_id', sa.Text(), nullable=True),
        sa.Column('counter_qr_token', sa.Text(), nullable=False),
        sa.Column('previous_counter_qr_token', sa.Text(), nullable=True),
        sa.Column('counter_qr_token_rotated_at', sa.DateTime(), nullable=True),
        sa.Column('timezone', sa.Text(), nullable=False, server_default='Europe/London'),
        sa.Column('max_earns_per_day', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('min_gap_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('status', sa.Text(), nullable=False, server_default='draft'),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('business_id', name='uq_loyalty_programs_business'),
        sa.CheckConstraint('reward_threshold > 0', name='ck_loyalty_programs_threshold_positive'),
        sa.CheckConstraint(
            "status IN ('draft', 'submitted', 'active', 'paused', 'ended')",
            name='ck_loyalty_programs_status',
        ),
        sa.CheckConstraint("type IN ('stamps', 'points')", name='ck_loyalty_programs_type'),
    )
    op.create_index('ix_loyalty_programs_city_status', 'loyalty_programs', ['city', 'status'])

    op.create_table(
        'loyalty_memberships',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('program_id', sa.Uuid(), sa.ForeignKey('loyalty_programs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_wallet_pass_id', sa.Text(), nullable=False),
        sa.Column('stamps_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('points_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_redeemed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_earned_at', sa.DateTime(), nullable=True),
        sa.Column('earned_today_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('earned_today_date', sa.Date(), nullable=True),
        sa.Column('walletpush_serial', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='active'),
        sa.Column('joined_at', sa.DateTime(), nullable=True),
        sa.Column('last_active_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('program_id', 'user_wallet_pass_id', name='uq_loyalty_memberships_program_visitor'),
        sa.CheckConstraint('stamps_balance >= 0', name='ck_loyalty_memberships_stamps_non_negative'),
        sa.CheckConstraint('points_balance >= 0', name='ck_loyalty_memberships_points_non_negative'),
    )

    op.create_table(
        'loyalty_earn_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('membership_id', sa.Uuid(), sa.ForeignKey('loyalty_memberships.id', ondelete='CASCADE'), nullable=True),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('business_profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_wallet_pass_id', sa.Text(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('method', sa.Text(), nullable=False, server_default='counter_qr'),
        sa.Column('ip_hash', sa.Text(), nullable=True),
        sa.Column('valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('reason_if_invalid', sa.Text(), nullable=True),
        sa.Column('earned_at', sa.DateTime(), nullable=False),
    )
    # hourly rate limit lookup
    op.create_index(
        'ix_loyalty_earn_events_visitor_earned_at', 'loyalty_earn_events', ['user_wallet_pass_id', 'earned_at'],
    )
    op.create_index('ix_loyalty_earn_events_ip_earned_at', 'loyalty_earn_events', ['ip_hash', 'earned_at'])

    op.create_table(
        'loyalty_redemptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('membership_id', sa.Uuid(), sa.ForeignKey('loyalty_memberships.id', ondelete='CASCADE'), nullable=False),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('business_profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_wallet_pass_id', sa.Text(), nullable=False),
        sa.Column('reward_description', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='consumed'),
        sa.Column('amount_deducted', sa.Integer(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=False),
        sa.Column('display_expires_at', sa.DateTime(), nullable=False),
        sa.Column('display_reset_at', sa.DateTime(), nullable=True),
        sa.Column('flagged_at', sa.DateTime(), nullable=True),
        sa.Column('flagged_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_loyalty_redemptions_pending_reset', 'loyalty_redemptions', ['display_expires_at'],
        postgresql_where=sa.text('display_reset_at IS NULL'),
    )

    op.create_table(
        'loyalty_pass_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('business_profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('program_id', sa.Uuid(), sa.ForeignKey('loyalty_programs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('design_spec_json', sa.JSON(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='submitted'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('reviewed_by_admin_id', sa.Uuid(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    # only one open request per program
    op.execute("""
        CREATE UNIQUE INDEX uq_loyalty_pass_requests_open
        ON loyalty_pass_requests(program_id)
        WHERE status = 'submitted'
    """)


def downgrade() -> None:
    op.execute("""
        DROP INDEX IF EXISTS uq_loyalty_pass_requests_open
    """)
    op.drop_table('loyalty_pass_requests')
    op.drop_index('ix_loyalty_redemptions_pending_reset', table_name='loyalty_redemptions')
    op.drop_table('loyalty_redemptions')
    op.drop_index('ix_loyalty_earn_events_ip_earned_at', table_name='loyalty_earn_events')
    op.drop_index('ix_loyalty_earn_events_visitor_earned_at', table_name='loyalty_earn_events')
    op.drop_table('loyalty_earn_events')
    op.drop_table('loyalty_memberships')
    op.drop_index('ix_loyalty_programs_city_status', table_name='loyalty_programs')
    op.drop_table('loyalty_programs')
    op.drop_table('app_users')
    op.drop_table('city_admins')
    op.drop_table('business_profiles')
