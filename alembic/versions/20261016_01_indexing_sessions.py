"""Create indexing session and chunk checkpoint tables

Revision ID: 20261016_01
Revises:
Create Date: 2026-10-16 09:12:44.218310

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261016_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        'indexing_sessions',
        sa.Column('session_id', sa.String(), primary_key=True),
        sa.Column('contract_address', sa.String(length=42), nullable=False),
        sa.Column('chain', sa.String(length=32), nullable=False),
        sa.Column('subscriber_id', sa.String(), nullable=False),
        sa.Column('tier', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('historical_days', sa.Integer(), nullable=False),
        sa.Column('continuous_sync', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tier_degraded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deployment_block', sa.BigInteger(), nullable=False),
        sa.Column('deployment_exact', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('start_block', sa.BigInteger(), nullable=False),
        sa.Column('end_block', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('metrics', sa.JSON(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_indexing_sessions_contract_address', 'indexing_sessions', ['contract_address'])
    op.create_index('ix_indexing_sessions_subscriber_id', 'indexing_sessions', ['subscriber_id'])
    op.create_index('ix_indexing_sessions_status', 'indexing_sessions', ['status'])

    op.create_table(
        'indexing_chunks',
        sa.Column('chunk_id', sa.String(), primary_key=True),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('start_block', sa.BigInteger(), nullable=False),
        sa.Column('end_block', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metrics', sa.JSON(), nullable=True),
        sa.Column('tx_hashes', sa.JSON(), nullable=True),
        sa.Column('accounts', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_indexing_chunks_session_id', 'indexing_chunks', ['session_id'])


def downgrade():
    op.drop_index('ix_indexing_chunks_session_id', table_name='indexing_chunks')
    op.drop_table('indexing_chunks')
    op.drop_index('ix_indexing_sessions_status', table_name='indexing_sessions')
    op.drop_index('ix_indexing_sessions_subscriber_id', table_name='indexing_sessions')
    op.drop_index('ix_indexing_sessions_contract_address', table_name='indexing_sessions')
    op.drop_table('indexing_sessions')
