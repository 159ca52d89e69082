"""add shared_sessions and session_presence tables

Revision ID: 8f2d4a6c1e90
Revises: 3b7e0c1d9a42
Create Date: 2026-09-02 10:31:47.118530

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '8f2d4a6c1e90'
down_revision: Union[str, None] = '3b7e0c1d9a42'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'shared_sessions',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('creator_id', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column(
            'state',
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column('state_version', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.ForeignKeyConstraint(['creator_id'], ['public.users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        schema='public'
    )
    op.create_index(
        'ix_shared_sessions_creator_created',
        'shared_sessions',
        ['creator_id', 'created_at'],
        schema='public'
    )

    op.create_table(
        'session_presence',
        sa.Column('session_id', sa.Text(), nullable=False),
        sa.Column('user_id', sa.Text(), nullable=False),
        sa.Column('username', sa.Text(), nullable=False),
        sa.Column('avatar', sa.Text(), nullable=True),
        sa.Column('last_seen', sa.BigInteger(), nullable=False),
        sa.ForeignKeyConstraint(['session_id'], ['public.shared_sessions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['public.users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('session_id', 'user_id'),
        schema='public'
    )
    # Backs the stale-row delete on the read path
    op.create_index(
        'ix_session_presence_session_last_seen',
        'session_presence',
        ['session_id', 'last_seen'],
        schema='public'
    )


def downgrade() -> None:
    op.drop_index('ix_session_presence_session_last_seen', table_name='session_presence', schema='public')
    op.drop_table('session_presence', schema='public')
    op.drop_index('ix_shared_sessions_creator_created', table_name='shared_sessions', schema='public')
    op.drop_table('shared_sessions', schema='public')
