"""initial schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credentials, balances and transactions tables."""

    # ========================================================================
    # Create credentials table
    # ========================================================================
    op.create_table(
        'credentials',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(16), nullable=False),
        sa.Column('identifier', sa.String(128), nullable=False),
        sa.Column('ciphertext', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("kind IN ('access', 'refresh')", name='ck_credential_kind'),
        sa.UniqueConstraint('user_id', 'identifier', name='uq_credential_user_identifier'),
    )

    op.create_index('idx_credentials_expires_at', 'credentials', ['expires_at'])

    # ========================================================================
    # Create balances table
    # ========================================================================
    op.create_table(
        'balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False, unique=True),
        sa.Column('token_credits', sa.Numeric(20, 6), nullable=False, server_default='0'),
        sa.Column('auto_refill_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('refill_amount', sa.Numeric(20, 6), nullable=False, server_default='0'),
        sa.Column('refill_interval_value', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('refill_interval_unit', sa.String(16), nullable=False, server_default='days'),
        sa.Column('last_refill', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('token_credits >= 0', name='ck_token_credits_non_negative'),
        sa.CheckConstraint('refill_amount >= 0', name='ck_refill_amount_non_negative'),
    )

    # ========================================================================
    # Create transactions table
    # ========================================================================
    op.create_table(
        'transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('token_type', sa.String(16), nullable=False),
        sa.Column('raw_amount', sa.Numeric(20, 6), nullable=False),
        sa.Column('rate', sa.Numeric(20, 6), nullable=False),
        sa.Column('token_value', sa.Numeric(20, 6), nullable=False),
        sa.Column('model', sa.String(255), nullable=True),
        sa.Column('context', sa.String(64), nullable=True),
        sa.Column('conversation_id', sa.String(255), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('write_tokens', sa.Integer(), nullable=True),
        sa.Column('read_tokens', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "token_type IN ('prompt', 'completion', 'credits')", name='ck_transaction_token_type'
        ),
    )

    op.create_index('idx_transactions_user_created', 'transactions', ['user_id', 'created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('transactions')
    op.drop_table('balances')
    op.drop_table('credentials')
