"""Initial bridge schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from rbridge.ledger.models import Amount


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Deposit addresses table
    op.create_table(
        'deposit_addresses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('network', sa.String(32), nullable=False),
        sa.Column('address', sa.String(128), nullable=False),
        sa.Column('encrypted_secret', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deposit_addresses_user_id', 'deposit_addresses', ['user_id'])
    op.create_index('ix_deposit_addresses_network_address', 'deposit_addresses', ['network', 'address'])
    op.create_index(
        'uq_deposit_addresses_active_user_network',
        'deposit_addresses',
        ['user_id', 'network'],
        unique=True,
        sqlite_where=sa.text('is_active = 1'),
        postgresql_where=sa.text('is_active'),
    )

    # Deposits table
    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('network', sa.String(32), nullable=False),
        sa.Column('from_address', sa.String(128), nullable=True),
        sa.Column('to_address', sa.String(128), nullable=False),
        sa.Column('tx_hash', sa.String(255), nullable=False),
        sa.Column('token_symbol', sa.String(20), nullable=False),
        sa.Column('amount', Amount(), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('required_confirmations', sa.Integer(), nullable=False),
        sa.Column('block_number', sa.Integer(), nullable=True),
        sa.Column('detection_method', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('wrapped_minted', sa.Boolean(), nullable=False),
        sa.Column('wrapped_amount', Amount(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('minted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tracking_restarted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash'),
    )
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])
    op.create_index('ix_deposits_status', 'deposits', ['status'])
    op.create_index('ix_deposits_to_address_token', 'deposits', ['to_address', 'token_symbol'])

    # Withdrawals table
    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('network', sa.String(32), nullable=False),
        sa.Column('to_address', sa.String(128), nullable=False),
        sa.Column('token_symbol', sa.String(20), nullable=False),
        sa.Column('amount', Amount(), nullable=False),
        sa.Column('fee', Amount(), nullable=False),
        sa.Column('wrapped_burned', sa.Boolean(), nullable=False),
        sa.Column('tx_hash', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('failure_stage', sa.String(10), nullable=True),
        sa.Column('compensation_status', sa.String(20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('burned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawals_user_id', 'withdrawals', ['user_id'])
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('ix_withdrawals_tx_hash', 'withdrawals', ['tx_hash'])

    # Wrapped asset supply counters
    op.create_table(
        'wrapped_asset_contracts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('symbol', sa.String(20), nullable=False),
        sa.Column('original_network', sa.String(32), nullable=False),
        sa.Column('underlying_symbol', sa.String(20), nullable=False),
        sa.Column('total_supply', Amount(), nullable=False),
        sa.Column('total_minted', Amount(), nullable=False),
        sa.Column('total_burned', Amount(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('symbol'),
        sa.CheckConstraint('total_supply >= 0', name='ck_wrapped_supply_non_negative'),
    )

    # Network status table
    op.create_table(
        'network_status',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('network', sa.String(32), nullable=False),
        sa.Column('is_online', sa.Boolean(), nullable=False),
        sa.Column('block_height', sa.Integer(), nullable=True),
        sa.Column('last_checked', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('network'),
    )

    # Operator queue
    op.create_table(
        'operator_alerts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(40), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('reference_type', sa.String(40), nullable=True),
        sa.Column('reference_id', sa.String(64), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_operator_alerts_resolved', 'operator_alerts', ['resolved'])


def downgrade() -> None:
    op.drop_table('operator_alerts')
    op.drop_table('network_status')
    op.drop_table('wrapped_asset_contracts')
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('deposit_addresses')
