"""initial schema - inventory items, sync runs, run registry, system config

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-18

For EXISTING databases: run `alembic stamp 001_initial` (skip DDL, just mark as current).
For NEW databases: run `alembic upgrade head` (creates all tables from models).
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from the SQLAlchemy models (idempotent).

    Seeds the single sync registry row so the first run can claim it.
    """
    from stocksync.models import Base

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)

    row = bind.execute(
        Base.metadata.tables["sync_locks"].select().where(
            Base.metadata.tables["sync_locks"].c.name == "inventory"
        )
    ).first()
    if row is None:
        op.bulk_insert(Base.metadata.tables["sync_locks"], [{"name": "inventory"}])


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE — only for dev/test environments."""
    from stocksync.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
