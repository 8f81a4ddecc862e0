"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create usage ledger and rate window tables."""

    # ========================================================================
    # Create usage_ledgers table
    # ========================================================================
    op.create_table(
        'usage_ledgers',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('version', sa.BigInteger(), nullable=False, server_default='1'),
        sa.Column('data', JSONB(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('version > 0', name='ck_ledger_version_positive'),
    )

    op.create_index('idx_usage_ledgers_updated_at', 'usage_ledgers', ['updated_at'])

    # ========================================================================
    # Create rate_windows table
    # ========================================================================
    op.create_table(
        'rate_windows',
        sa.Column('limiter_key', sa.String(255), primary_key=True),
        sa.Column('timestamps', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('request_count >= 0', name='ck_rate_window_count_non_negative'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('rate_windows')
    op.drop_index('idx_usage_ledgers_updated_at', table_name='usage_ledgers')
    op.drop_table('usage_ledgers')
