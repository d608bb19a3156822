"""Create gifts table

Revision ID: create_gifts_table
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_gifts_table'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'gifts',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('market_ticker', sa.String(100), nullable=False),
        sa.Column('market_title', sa.String(500), nullable=False),
        sa.Column('side', sa.String(3), nullable=False),
        sa.Column('outcome_mint', sa.String(44), nullable=False, server_default=''),
        sa.Column('token_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cost_usdc', sa.Numeric(18, 6), nullable=False),
        sa.Column('requested_shares', sa.BigInteger(), nullable=True),
        sa.Column('sender_id', sa.String(255), nullable=False),
        sa.Column('sender_email', sa.String(255), nullable=True),
        sa.Column('recipient_contact', sa.String(255), nullable=False),
        sa.Column('recipient_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('gift_message', sa.Text(), nullable=True),
        sa.Column('recipient_wallet_address', sa.String(44), nullable=True),
        sa.Column('recipient_identity_id', sa.String(255), nullable=True),
        sa.Column('purchase_tx_sig', sa.String(88), nullable=True),
        sa.Column('claim_tx_sig', sa.String(88), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending_payment'),
        sa.Column('failure_reason', sa.String(64), nullable=True),
        sa.Column('claim_lock_token', sa.String(32), nullable=True),
        sa.Column('claim_lock_expires_at', sa.DateTime(), nullable=True),
        sa.Column('claim_pending_sig', sa.String(88), nullable=True),
        sa.Column('claim_pending_address', sa.String(44), nullable=True),
        sa.Column('claim_pending_valid_height', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('idempotency_key', name='uq_gifts_idempotency_key'),
    )
    op.create_index('ix_gifts_sender_id', 'gifts', ['sender_id'])
    op.create_index('ix_gifts_recipient_contact', 'gifts', ['recipient_contact'])
    op.create_index('ix_gifts_recipient_identity_id', 'gifts', ['recipient_identity_id'])
    op.create_index('ix_gifts_status_created', 'gifts', ['status', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_gifts_status_created', table_name='gifts')
    op.drop_index('ix_gifts_recipient_identity_id', table_name='gifts')
    op.drop_index('ix_gifts_recipient_contact', table_name='gifts')
    op.drop_index('ix_gifts_sender_id', table_name='gifts')
    op.drop_table('gifts')
