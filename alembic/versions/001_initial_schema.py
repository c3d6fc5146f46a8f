"""Initial schema with queue_entries table

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create queue_entries table
    op.create_table(
        "queue_entries",
        sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("collection", sa.String(255), nullable=False),
        sa.Column("key", sa.String(255, collation="C"), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("priority", sa.Float(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("collection", "key", name="uq_queue_entries_collection_key"),
    )

    # Ordering index for first-item lookups; entries without priority first
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_queue_entries_order
        ON queue_entries (collection, priority NULLS FIRST, key)
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_queue_entries_order")
    op.drop_table("queue_entries")
