"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the ledger and discount schema."""

    # ========================================================================
    # Create movements table (append-only)
    # ========================================================================
    op.create_table(
        'movements',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=True), primary_key=True),
        sa.Column('uid', UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='APPROVED'),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_movement_amount_positive'),
        sa.CheckConstraint(
            "type IN ('EMAIL_VERIFICATION', 'PHONE_VERIFICATION', 'ACCOUNT_VERIFICATION', "
            "'TOKENS_PURCHASED', 'TOKENS_CONSUMED', 'TOKENS_REFUNDED', 'TOKENS_BONUS', "
            "'TOKENS_ADJUSTMENT')",
            name='ck_movement_type',
        ),
        sa.CheckConstraint("status IN ('PENDING', 'APPROVED', 'EXPIRED')", name='ck_movement_status'),
        sa.UniqueConstraint('uid', name='uq_movements_uid'),
    )

    op.create_index('idx_movements_account_created', 'movements', ['account_id', 'created_at', 'id'])
    op.create_index('idx_movements_type', 'movements', ['type'])

    # ========================================================================
    # Create token_balances table
    # ========================================================================
    op.create_table(
        'token_balances',
        sa.Column('account_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('uid', UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('total_available', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_bonus', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_consumed', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_refunded', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('total_available >= 0', name='ck_token_balance_available_non_negative'),
        sa.CheckConstraint('total_purchased >= 0', name='ck_token_balance_purchased_non_negative'),
        sa.CheckConstraint('total_bonus >= 0', name='ck_token_balance_bonus_non_negative'),
        sa.CheckConstraint('total_consumed >= 0', name='ck_token_balance_consumed_non_negative'),
        sa.CheckConstraint('total_refunded >= 0', name='ck_token_balance_refunded_non_negative'),
        sa.CheckConstraint(
            'total_available = total_purchased + total_bonus - total_consumed - total_refunded',
            name='ck_token_balance_consistency',
        ),
        sa.UniqueConstraint('uid', name='uq_token_balances_uid'),
    )

    # ========================================================================
    # Create discount_codes table
    # ========================================================================
    op.create_table(
        'discount_codes',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=True), primary_key=True),
        sa.Column('uid', UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('value', sa.Numeric(12, 2), nullable=False),
        sa.Column('applicable_currencies', ARRAY(sa.String(3)), nullable=False, server_default='{}'),
        sa.Column('minimum_purchase_minor', sa.BigInteger(), nullable=True),
        sa.Column('maximum_discount_minor', sa.BigInteger(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_account', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('requires_verification', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('first_purchase_only', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('restrict_to_accounts', ARRAY(UUID(as_uuid=True)), nullable=False, server_default='{}'),
        sa.Column('exclude_accounts', ARRAY(UUID(as_uuid=True)), nullable=False, server_default='{}'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('terms_and_conditions', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_by', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('value > 0', name='ck_discount_code_value_positive'),
        sa.CheckConstraint('current_uses >= 0', name='ck_discount_code_uses_non_negative'),
        sa.CheckConstraint(
            'max_uses IS NULL OR current_uses <= max_uses',
            name='ck_discount_code_uses_within_limit',
        ),
        sa.CheckConstraint(
            "type IN ('PERCENTAGE', 'FIXED_AMOUNT', 'BONUS_TOKENS')",
            name='ck_discount_code_type',
        ),
        sa.UniqueConstraint('uid', name='uq_discount_codes_uid'),
        sa.UniqueConstraint('code', name='uq_discount_codes_code'),
    )

    op.create_index('idx_discount_codes_enabled', 'discount_codes', ['is_enabled'])
    op.create_index('idx_discount_codes_valid_until', 'discount_codes', ['valid_until'])

    # ========================================================================
    # Create discount_code_account_uses table
    # ========================================================================
    op.create_table(
        'discount_code_account_uses',
        sa.Column('discount_code_id', sa.BigInteger(), nullable=False),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.PrimaryKeyConstraint('discount_code_id', 'account_id', name='pk_discount_code_account_uses'),
        sa.CheckConstraint('uses >= 0', name='ck_code_account_uses_non_negative'),
        sa.ForeignKeyConstraint(
            ['discount_code_id'], ['discount_codes.id'],
            name='fk_code_account_uses_code', ondelete='RESTRICT',
        ),
    )

    # ========================================================================
    # Create discount_code_usages table (append-only)
    # ========================================================================
    op.create_table(
        'discount_code_usages',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=True), primary_key=True),
        sa.Column('discount_code_id', sa.BigInteger(), nullable=False),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('movement_uid', UUID(as_uuid=True), nullable=False),
        sa.Column('tokens_amount', sa.BigInteger(), nullable=False),
        sa.Column('discount_applied_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.ForeignKeyConstraint(
            ['discount_code_id'], ['discount_codes.id'],
            name='fk_code_usages_code', ondelete='RESTRICT',
        ),
    )

    op.create_index('idx_code_usages_code', 'discount_code_usages', ['discount_code_id', 'used_at'])
    op.create_index('idx_code_usages_account', 'discount_code_usages', ['account_id'])

    # ========================================================================
    # Create bulk_discounts table
    # ========================================================================
    op.create_table(
        'bulk_discounts',
        sa.Column('id', sa.BigInteger(), sa.Identity(always=True), primary_key=True),
        sa.Column('uid', UUID(as_uuid=True), nullable=False, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tiers', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('applicable_currencies', ARRAY(sa.String(3)), nullable=False, server_default='{}'),
        sa.Column('applicable_countries', ARRAY(sa.String(3)), nullable=False, server_default='{}'),
        sa.Column('requires_verification', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('min_account_age_days', sa.Integer(), nullable=True),
        sa.Column('restrict_to_accounts', ARRAY(UUID(as_uuid=True)), nullable=False, server_default='{}'),
        sa.Column('exclude_accounts', ARRAY(UUID(as_uuid=True)), nullable=False, server_default='{}'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('total_uses', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_tokens_sold', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_discount_given_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_by', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            'min_account_age_days IS NULL OR min_account_age_days >= 0',
            name='ck_bulk_discount_min_age_non_negative',
        ),
        sa.UniqueConstraint('uid', name='uq_bulk_discounts_uid'),
        sa.UniqueConstraint('name', name='uq_bulk_discounts_name'),
    )

    # At most one default schedule
    op.create_index(
        'uq_bulk_discounts_single_default',
        'bulk_discounts',
        ['is_default'],
        unique=True,
        postgresql_where=sa.text('is_default'),
    )
    op.create_index('idx_bulk_discounts_enabled_priority', 'bulk_discounts', ['is_enabled', 'priority'])


def downgrade() -> None:
    """Drop the ledger and discount schema."""
    op.drop_index('idx_bulk_discounts_enabled_priority', table_name='bulk_discounts')
    op.drop_index('uq_bulk_discounts_single_default', table_name='bulk_discounts')
    op.drop_table('bulk_discounts')

    op.drop_index('idx_code_usages_account', table_name='discount_code_usages')
    op.drop_index('idx_code_usages_code', table_name='discount_code_usages')
    op.drop_table('discount_code_usages')

    op.drop_table('discount_code_account_uses')

    op.drop_index('idx_discount_codes_valid_until', table_name='discount_codes')
    op.drop_index('idx_discount_codes_enabled', table_name='discount_codes')
    op.drop_table('discount_codes')

    op.drop_table('token_balances')

    op.drop_index('idx_movements_type', table_name='movements')
    op.drop_index('idx_movements_account_created', table_name='movements')
    op.drop_table('movements')
