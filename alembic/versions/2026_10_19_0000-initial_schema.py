"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

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
    """Create usage, credit ledger, app config and user settings tables."""

    # ========================================================================
    # Create daily_usage table
    # ========================================================================
    op.create_table(
        'daily_usage',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('chain_id', sa.String(128), nullable=False),
        sa.Column('account_name', sa.String(64), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_input_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_output_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('request_count >= 0', name='ck_daily_usage_request_count_non_negative'),
        sa.UniqueConstraint('chain_id', 'account_name', 'usage_date', name='uq_daily_usage_key_date'),
    )
    op.create_index('idx_daily_usage_date', 'daily_usage', ['usage_date'])

    # ========================================================================
    # Create credit_balances table
    # ========================================================================
    op.create_table(
        'credit_balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('chain_id', sa.String(128), nullable=False),
        sa.Column('account_name', sa.String(64), nullable=False),
        sa.Column('balance_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_deposited_tlos', sa.Numeric(30, 10), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('balance_tokens >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint('total_deposited_tlos >= 0', name='ck_total_deposited_non_negative'),
        sa.UniqueConstraint('chain_id', 'account_name', name='uq_credit_balance_key'),
    )

    # ========================================================================
    # Create credit_transactions table (append-only)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('chain_id', sa.String(128), nullable=False),
        sa.Column('account_name', sa.String(64), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('tlos_amount', sa.Numeric(30, 10), nullable=True),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('input_tokens', sa.BigInteger(), nullable=True),
        sa.Column('output_tokens', sa.BigInteger(), nullable=True),
        sa.Column('total_tokens', sa.BigInteger(), nullable=True),
        sa.Column('model', sa.String(200), nullable=True),
        sa.Column('token_units_delta', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("type IN ('deposit', 'usage')", name='ck_credit_transaction_type'),
        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transaction_balance_non_negative'),
        sa.CheckConstraint("type <> 'deposit' OR tx_hash IS NOT NULL", name='ck_deposit_has_tx_hash'),
    )

    # A chain transaction can be credited at most once
    op.create_index(
        'uq_credit_transactions_tx_hash',
        'credit_transactions',
        ['tx_hash'],
        unique=True,
        postgresql_where=sa.text('tx_hash IS NOT NULL'),
    )
    op.create_index(
        'idx_credit_transactions_key_created',
        'credit_transactions',
        ['chain_id', 'account_name', 'created_at'],
    )

    # ========================================================================
    # Create app_config table
    # ========================================================================
    op.create_table(
        'app_config',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create user_settings table
    # ========================================================================
    op.create_table(
        'user_settings',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('llm_mode', sa.String(20), nullable=False, server_default='builtin'),
        sa.Column('llm_provider', sa.String(50), nullable=True),
        sa.Column('llm_model', sa.String(200), nullable=True),
        sa.Column('llm_api_key', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("llm_mode IN ('builtin', 'byok')", name='ck_user_settings_llm_mode'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('user_settings')
    op.drop_table('app_config')
    op.drop_index('idx_credit_transactions_key_created', table_name='credit_transactions')
    op.drop_index('uq_credit_transactions_tx_hash', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_index('idx_daily_usage_date', table_name='daily_usage')
    op.drop_table('daily_usage')
