"""add profiles

Revision ID: 2026_10_20_0000
Revises: 2026_10_19_0000
Create Date: 2026-10-20 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_20_0000'
down_revision: Union[str, None] = '2026_10_19_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profiles table for wallet logins."""
    op.create_table(
        'profiles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('chain_id', sa.String(128), nullable=False),
        sa.Column('account_name', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('account_name', 'chain_id', name='uq_profiles_account_chain'),
    )


def downgrade() -> None:
    """Drop profiles table."""
    op.drop_table('profiles')
