"""Initial ledger schema

Tables:
    - vaults: Tokenized vaults and their share pricing
    - investments: Cost-basis lots per (asset, account, horizon)
    - transactions: Atomic ledger postings with derived amounts
    - transaction_links: Typed edges between postings (action, stake_unstake, borrow_repay)
    - vault_shares: Share holdings per (vault, user)
    - vault_transactions: Append-only share movement history
    - fx_rates: Cached exchange rates
    - asset_prices: Cached daily asset prices

Revision ID: 001
Revises: None
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(30, 8)
RATE = sa.Numeric(30, 12)


def upgrade() -> None:
    # ==========================================================================
    # VAULTS
    # ==========================================================================
    op.create_table(
        'vaults',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('vault_type', sa.String(32), nullable=False, server_default='single_asset'),
        sa.Column('status', sa.String(16), nullable=False, server_default='active'),
        sa.Column('token_symbol', sa.String(20), nullable=False),
        sa.Column('token_decimals', sa.Integer(), nullable=False, server_default='18'),
        sa.Column('total_supply', AMOUNT, nullable=False, server_default='0'),
        sa.Column('total_assets_under_management', AMOUNT, nullable=False, server_default='0'),
        sa.Column('current_share_price', AMOUNT, nullable=False, server_default='1'),
        sa.Column('initial_share_price', AMOUNT, nullable=False, server_default='1'),
        sa.Column('high_watermark', AMOUNT, nullable=False, server_default='1'),
        sa.Column('is_user_defined_price', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('manual_price_per_share', AMOUNT, nullable=False, server_default='0'),
        sa.Column('price_last_updated_by', sa.String(255), nullable=True),
        sa.Column('price_last_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('min_deposit_amount', AMOUNT, nullable=False, server_default='0'),
        sa.Column('max_deposit_amount', AMOUNT, nullable=True),
        sa.Column('min_withdrawal_amount', AMOUNT, nullable=False, server_default='0'),
        sa.Column('is_deposit_allowed', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_withdrawal_allowed', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('inception_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_by', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
    )

    # ==========================================================================
    # INVESTMENTS
    # ==========================================================================
    op.create_table(
        'investments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('asset', sa.String(50), nullable=False),
        sa.Column('account', sa.String(100), nullable=False),
        sa.Column('horizon', sa.String(20), nullable=True),
        sa.Column('deposit_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deposit_qty', AMOUNT, nullable=False, server_default='0'),
        sa.Column('deposit_cost', AMOUNT, nullable=False, server_default='0'),
        sa.Column('deposit_unit_cost', AMOUNT, nullable=False, server_default='0'),
        sa.Column('withdrawal_qty', AMOUNT, nullable=False, server_default='0'),
        sa.Column('withdrawal_value', AMOUNT, nullable=False, server_default='0'),
        sa.Column('withdrawal_unit_price', AMOUNT, nullable=False, server_default='0'),
        sa.Column('withdrawal_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('remaining_cost', AMOUNT, nullable=False, server_default='0'),
        sa.Column('realized_pnl', AMOUNT, nullable=False, server_default='0'),
        sa.Column('pnl_percent', AMOUNT, nullable=False, server_default='0'),
        sa.Column('is_open', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('cost_basis_method', sa.String(16), nullable=False, server_default='fifo'),
        sa.Column('vault_id', sa.String(36), sa.ForeignKey('vaults.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
    )
    op.create_index('ix_investment_asset_account_open', 'investments', ['asset', 'account', 'is_open'])

    # ==========================================================================
    # TRANSACTIONS
    # ==========================================================================
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('asset', sa.String(50), nullable=False, index=True),
        sa.Column('account', sa.String(100), nullable=False, index=True),
        sa.Column('counterparty', sa.String(255), nullable=True),
        sa.Column('tag', sa.String(255), nullable=True, index=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('quantity', AMOUNT, nullable=False),
        sa.Column('price_local', AMOUNT, nullable=False, server_default='0'),
        sa.Column('amount_local', AMOUNT, nullable=False, server_default='0'),
        sa.Column('fx_to_usd', RATE, nullable=False, server_default='0'),
        sa.Column('fx_to_vnd', RATE, nullable=False, server_default='0'),
        sa.Column('amount_usd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('amount_vnd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('fee_usd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('fee_vnd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('delta_qty', AMOUNT, nullable=False, server_default='0'),
        sa.Column('cashflow_usd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('cashflow_vnd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('internal_flow', sa.Boolean(), nullable=True),
        sa.Column('horizon', sa.String(20), nullable=True, index=True),
        sa.Column('entry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('exit_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fx_source', sa.String(50), nullable=True),
        sa.Column('fx_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            'investment_id', sa.String(36),
            sa.ForeignKey('investments.id', ondelete='SET NULL'),
            nullable=True, index=True,
        ),
        sa.Column('borrow_apr', sa.Numeric(10, 8), nullable=True),
        sa.Column('borrow_term_days', sa.Integer(), nullable=True),
        sa.Column('borrow_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_transaction_account_asset_date', 'transactions', ['account', 'asset', 'date'])
    op.create_index('ix_transaction_type_date', 'transactions', ['type', 'date'])

    # ==========================================================================
    # TRANSACTION LINKS
    # ==========================================================================
    op.create_table(
        'transaction_links',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('link_type', sa.String(32), nullable=False),
        sa.Column('from_tx', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False, index=True),
        sa.Column('to_tx', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('link_type', 'from_tx', 'to_tx', name='uq_link_type_from_to'),
    )
    op.create_index('ix_transaction_link_to_type', 'transaction_links', ['to_tx', 'link_type'])

    # ==========================================================================
    # VAULT SHARES
    # ==========================================================================
    op.create_table(
        'vault_shares',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('vault_id', sa.String(36), sa.ForeignKey('vaults.id'), nullable=False, index=True),
        sa.Column('user_id', sa.String(255), nullable=False, index=True),
        sa.Column('share_balance', AMOUNT, nullable=False, server_default='0'),
        sa.Column('cost_basis', AMOUNT, nullable=False, server_default='0'),
        sa.Column('avg_cost_per_share', AMOUNT, nullable=False, server_default='0'),
        sa.Column('total_deposits', AMOUNT, nullable=False, server_default='0'),
        sa.Column('total_withdrawals', AMOUNT, nullable=False, server_default='0'),
        sa.Column('net_deposits', AMOUNT, nullable=False, server_default='0'),
        sa.Column('realized_pnl', AMOUNT, nullable=False, server_default='0'),
        sa.Column('fees_paid', AMOUNT, nullable=False, server_default='0'),
        sa.Column('first_deposit_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_activity_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.UniqueConstraint('vault_id', 'user_id', name='uq_vault_user'),
    )

    # ==========================================================================
    # VAULT TRANSACTIONS
    # ==========================================================================
    op.create_table(
        'vault_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('vault_id', sa.String(36), sa.ForeignKey('vaults.id'), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True, index=True),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('shares', AMOUNT, nullable=False, server_default='0'),
        sa.Column('price_per_share', AMOUNT, nullable=False, server_default='0'),
        sa.Column('amount_usd', AMOUNT, nullable=False, server_default='0'),
        sa.Column('balance_before', AMOUNT, nullable=False, server_default='0'),
        sa.Column('balance_after', AMOUNT, nullable=False, server_default='0'),
        sa.Column(
            'posting_id', sa.String(36),
            sa.ForeignKey('transactions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_vault_transaction_vault_timestamp', 'vault_transactions', ['vault_id', 'timestamp'])

    # ==========================================================================
    # GATEWAY CACHE
    # ==========================================================================
    op.create_table(
        'fx_rates',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('from_currency', sa.String(10), nullable=False),
        sa.Column('to_currency', sa.String(10), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('rate', RATE, nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('from_currency', 'to_currency', 'date', name='uq_fx_from_to_date'),
    )

    op.create_table(
        'asset_prices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('symbol', sa.String(50), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('price', AMOUNT, nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('symbol', 'currency', 'date', name='uq_price_symbol_currency_date'),
    )


def downgrade() -> None:
    op.drop_table('asset_prices')
    op.drop_table('fx_rates')
    op.drop_index('ix_vault_transaction_vault_timestamp', table_name='vault_transactions')
    op.drop_table('vault_transactions')
    op.drop_table('vault_shares')
    op.drop_index('ix_transaction_link_to_type', table_name='transaction_links')
    op.drop_table('transaction_links')
    op.drop_index('ix_transaction_type_date', table_name='transactions')
    op.drop_index('ix_transaction_account_asset_date', table_name='transactions')
    op.drop_table('transactions')
    op.drop_index('ix_investment_asset_account_open', table_name='investments')
    op.drop_table('investments')
    op.drop_table('vaults')
