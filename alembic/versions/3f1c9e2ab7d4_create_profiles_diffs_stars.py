"""create_profiles_diffs_stars

Revision ID: 3f1c9e2ab7d4
Revises:
Create Date: 2026-10-19 09:12:44.501236

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9e2ab7d4'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('password_hash', sa.String(), nullable=False),
        sa.Column('password_salt', sa.String(), nullable=True),
        sa.Column('encrypted_api_key', sa.Text(), nullable=False),
        sa.Column('salt', sa.String(), nullable=False),
        sa.Column('keys_hash', sa.String(), nullable=True),
        sa.Column('languages', sa.JSON(), nullable=True),
        sa.Column('frameworks', sa.JSON(), nullable=True),
        sa.Column('tools', sa.JSON(), nullable=True),
        sa.Column('topics', sa.JSON(), nullable=True),
        sa.Column('depth', sa.String(), nullable=False, server_default='standard'),
        sa.Column('custom_focus', sa.Text(), nullable=True),
        sa.Column('diffs_hash', sa.String(), nullable=True),
        sa.Column('stars_hash', sa.String(), nullable=True),
        sa.Column('content_updated_at', sa.DateTime(), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lockout_until', sa.DateTime(), nullable=True),
        sa.Column('last_failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'diffs',
        sa.Column('profile_id', sa.String(), sa.ForeignKey('profiles.id', ondelete='CASCADE'), primary_key=True, nullable=False),
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('encrypted_data', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_diffs_id', 'diffs', ['id'])
    op.create_index('ix_diffs_profile_created', 'diffs', ['profile_id', 'created_at'])

    op.create_table(
        'stars',
        sa.Column('profile_id', sa.String(), sa.ForeignKey('profiles.id', ondelete='CASCADE'), primary_key=True, nullable=False),
        sa.Column('id', sa.String(), primary_key=True, nullable=False),
        sa.Column('encrypted_data', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('stars')
    op.drop_index('ix_diffs_profile_created', table_name='diffs')
    op.drop_index('ix_diffs_id', table_name='diffs')
    op.drop_table('diffs')
    op.drop_table('profiles')
