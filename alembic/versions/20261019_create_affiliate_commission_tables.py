"""Create affiliate attribution and commission ledger tables.

Revision ID: 20261019_affiliate_commissions
Revises:
Create Date: 2026-10-19

Tables: commission_plans, commission_tiers, affiliates, referral_codes,
attribution_touches, attribution_configs, plan_assignments,
commission_promotions, commission_events.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = '20261019_affiliate_commissions'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated=True):
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()))
    return columns


def upgrade():
    # 1. Plans
    op.create_table(
        'commission_plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('plan_type', sa.String(50), nullable=False, server_default='PERCENT', comment='FLAT, PERCENT'),
        sa.Column('flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('percent_bps', sa.Integer, nullable=True),
        sa.Column('initial_flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('initial_percent_bps', sa.Integer, nullable=True),
        sa.Column('recurring_flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('recurring_percent_bps', sa.Integer, nullable=True),
        sa.Column('applies_to', sa.String(50), nullable=False, server_default='FIRST_PAYMENT_ONLY',
                  comment='FIRST_PAYMENT_ONLY, ALL_PAYMENTS'),
        sa.Column('hold_days', sa.Integer, nullable=False, server_default='30'),
        sa.Column('clawback_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('recurring_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('recurring_months', sa.Integer, nullable=True,
                  comment='Max recurring cycles that earn commission, NULL = unlimited'),
        sa.Column('recurring_decay_pct', sa.Integer, nullable=True,
                  comment='Percent of the recurring rate paid after cycle 12'),
        sa.Column('tier_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'name', 'version', name='uq_commission_plans_tenant_name_version'),
        sa.CheckConstraint('percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)',
                           name='ck_commission_plans_percent_bps'),
        sa.CheckConstraint('initial_percent_bps IS NULL OR (initial_percent_bps >= 0 AND initial_percent_bps <= 10000)',
                           name='ck_commission_plans_initial_percent_bps'),
        sa.CheckConstraint('recurring_percent_bps IS NULL OR (recurring_percent_bps >= 0 AND recurring_percent_bps <= 10000)',
                           name='ck_commission_plans_recurring_percent_bps'),
    )

    # 2. Tier catalog
    op.create_table(
        'commission_tiers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('commission_plans.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('level', sa.Integer, nullable=False),
        sa.Column('min_conversions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('min_revenue_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('percent_bps', sa.Integer, nullable=True),
        sa.Column('flat_amount_cents', sa.Integer, nullable=True),
        sa.Column('bonus_cents', sa.Integer, nullable=False, server_default='0',
                  comment='One-time bonus when reaching this tier'),
        sa.Column('perks', JSONB, nullable=True),
        *_timestamps(updated=False),
        sa.UniqueConstraint('plan_id', 'level', name='uq_commission_tiers_plan_level'),
        sa.UniqueConstraint('plan_id', 'name', name='uq_commission_tiers_plan_name'),
    )

    # 3. Affiliates and referral codes
    op.create_table(
        'affiliates',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='ACTIVE',
                  comment='ACTIVE, PAUSED, TERMINATED'),
        sa.Column('lifetime_conversions', sa.Integer, nullable=False, server_default='0'),
        sa.Column('lifetime_revenue_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('current_tier_id', UUID(as_uuid=True),
                  sa.ForeignKey('commission_tiers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('tier_qualified_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('lifetime_conversions >= 0', name='ck_affiliates_conversions_non_negative'),
        sa.CheckConstraint('lifetime_revenue_cents >= 0', name='ck_affiliates_revenue_non_negative'),
    )
    op.create_index('ix_affiliates_tenant_status', 'affiliates', ['tenant_id', 'status'])

    op.create_table(
        'referral_codes',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('code', sa.String(50), nullable=False, comment='Stored trimmed and UPPERCASE'),
        sa.Column('description', sa.String(200), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(updated=False),
        sa.UniqueConstraint('tenant_id', 'code', name='uq_referral_codes_tenant_code'),
    )

    # 4. Attribution
    op.create_table(
        'attribution_touches',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('referral_code_id', UUID(as_uuid=True),
                  sa.ForeignKey('referral_codes.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('ref_code', sa.String(50), nullable=False),
        sa.Column('visitor_fingerprint', sa.String(128), nullable=False),
        sa.Column('cookie_id', sa.String(128), nullable=True),
        sa.Column('ip_address_hash', sa.String(128), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('landing_page', sa.Text, nullable=True),
        sa.Column('referrer_url', sa.Text, nullable=True),
        sa.Column('utm_source', sa.String(100), nullable=True),
        sa.Column('utm_medium', sa.String(100), nullable=True),
        sa.Column('utm_campaign', sa.String(100), nullable=True),
        sa.Column('sub_id_1', sa.String(100), nullable=True),
        sa.Column('sub_id_2', sa.String(100), nullable=True),
        sa.Column('sub_id_3', sa.String(100), nullable=True),
        sa.Column('touch_type', sa.String(50), nullable=False, server_default='CLICK'),
        sa.Column('touched_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_attribution_touches_fingerprint', 'attribution_touches',
                    ['tenant_id', 'visitor_fingerprint', 'touched_at'])
    op.create_index('ix_attribution_touches_cookie', 'attribution_touches', ['tenant_id', 'cookie_id', 'touched_at'])
    op.create_index('ix_attribution_touches_affiliate', 'attribution_touches', ['affiliate_id', 'touched_at'])

    op.create_table(
        'attribution_configs',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('new_customer_model', sa.String(50), nullable=False, server_default='FIRST_CLICK'),
        sa.Column('returning_customer_model', sa.String(50), nullable=False, server_default='LAST_CLICK'),
        sa.Column('cookie_window_days', sa.Integer, nullable=False, server_default='30'),
        *_timestamps(updated=False),
    )

    # 5. Plan assignments: at most one open row per affiliate
    op.create_table(
        'plan_assignments',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('commission_plans.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('effective_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('effective_to', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index(
        'uq_plan_assignments_one_open', 'plan_assignments', ['affiliate_id'],
        unique=True, postgresql_where=sa.text('effective_to IS NULL'),
    )
    op.create_index('ix_plan_assignments_plan', 'plan_assignments', ['plan_id', 'effective_to'])

    # 6. Promotions
    op.create_table(
        'commission_promotions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('commission_plans.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('bonus_percent_bps', sa.Integer, nullable=True),
        sa.Column('bonus_flat_cents', sa.Integer, nullable=True),
        sa.Column('min_order_cents', sa.Integer, nullable=True),
        sa.Column('max_uses', sa.Integer, nullable=True),
        sa.Column('uses_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('affiliate_ids', JSONB, nullable=True),
        sa.Column('ref_codes', JSONB, nullable=True),
        *_timestamps(updated=False),
    )

    # 7. Commission ledger
    op.create_table(
        'commission_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('affiliate_id', UUID(as_uuid=True), sa.ForeignKey('affiliates.id', ondelete='RESTRICT'),
                  nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), sa.ForeignKey('commission_plans.id', ondelete='RESTRICT'),
                  nullable=True),
        sa.Column('tier_id', UUID(as_uuid=True), sa.ForeignKey('commission_tiers.id', ondelete='RESTRICT'),
                  nullable=True),
        sa.Column('touch_id', UUID(as_uuid=True), sa.ForeignKey('attribution_touches.id', ondelete='SET NULL'),
                  nullable=True),
        sa.Column('reversal_of_id', UUID(as_uuid=True),
                  sa.ForeignKey('commission_events.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('source_event_id', sa.String(255), nullable=False),
        sa.Column('source_object_id', sa.String(255), nullable=True),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('event_amount_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('commission_amount_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('base_commission_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('tier_bonus_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('promotion_bonus_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('product_adjustment_cents', sa.BigInteger, nullable=False, server_default='0'),
        sa.Column('is_recurring', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('recurring_cycle', sa.Integer, nullable=True),
        sa.Column('attribution_model', sa.String(50), nullable=False, server_default='CONVERSION',
                  comment='CONVERSION, TIER_BONUS, REVERSAL'),
        sa.Column('status', sa.String(50), nullable=False, server_default='PENDING',
                  comment='PENDING, APPROVED, PAID, CLAWED_BACK'),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('hold_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_reference', sa.String(100), nullable=True),
        sa.Column('clawed_back_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clawback_reason', sa.String(500), nullable=True),
        sa.Column('extra_info', JSONB, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'source_event_id', name='uq_commission_events_tenant_source'),
    )
    op.create_index('ix_commission_events_affiliate_status', 'commission_events', ['affiliate_id', 'status'])
    op.create_index('ix_commission_events_status_hold', 'commission_events', ['status', 'hold_until'])
    op.create_index('ix_commission_events_source_object', 'commission_events', ['tenant_id', 'source_object_id'])
    op.create_index('ix_commission_events_subscription', 'commission_events', ['tenant_id', 'subscription_id'])


def downgrade():
    op.drop_table('commission_events')
    op.drop_table('commission_promotions')
    op.drop_table('plan_assignments')
    op.drop_table('attribution_configs')
    op.drop_table('attribution_touches')
    op.drop_table('referral_codes')
    op.drop_table('affiliates')
    op.drop_table('commission_tiers')
    op.drop_table('commission_plans')
