"""initial schema - oauth_tokens, synced_records, opportunities, sync_runs

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-17

For NEW databases: run `alembic upgrade head` (creates all tables from models).
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from the fieldsync models.

    checkfirst=True keeps this safe against a partially created schema.
    """
    from fieldsync.models import Base

    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE: synced records and stored tokens are lost."""
    from fieldsync.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
