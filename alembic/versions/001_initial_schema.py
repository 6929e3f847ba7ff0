"""Create scrapes, transactions and logs.

``transactions.url`` carries a partial unique index: at most one row per URL
whose status is neither ``duplicated`` nor ``invalid``.  Intake relies on it
to claim URLs atomically.  ``logs.parent_id`` is unique so that each batch
is aggregated at most once.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "scrapes",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("urls", postgresql.JSONB(), nullable=False),
        sa.Column("tag", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing"),
        # Batch bookkeeping
        sa.Column("expected_batches", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completed_batches", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
    )
    op.create_index("idx_scrapes_status", "scrapes", ["status"])

    op.create_table(
        "transactions",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "scrapes_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scrapes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("tag", sa.String(255), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
    )
    op.create_index(
        "uq_transactions_url_primary",
        "transactions",
        ["url"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('duplicated', 'invalid')"),
    )
    op.create_index("idx_transactions_scrapes_id", "transactions", ["scrapes_id"])
    op.create_index("idx_transactions_url", "transactions", ["url"])

    op.create_table(
        "logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "scrapes_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("scrapes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("parent_id", sa.String(255), nullable=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("length", sa.Integer(), nullable=True),
        sa.Column("succeed", sa.Integer(), nullable=True),
        sa.Column("failed", sa.Integer(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    )
    op.create_index("idx_logs_scrapes_id", "logs", ["scrapes_id"])
    op.create_index("uq_logs_parent_id", "logs", ["parent_id"], unique=True)


def downgrade() -> None:
    op.drop_index("uq_logs_parent_id", table_name="logs")
    op.drop_index("idx_logs_scrapes_id", table_name="logs")
    op.drop_table("logs")
    op.drop_index("idx_transactions_url", table_name="transactions")
    op.drop_index("idx_transactions_scrapes_id", table_name="transactions")
    op.drop_index("uq_transactions_url_primary", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("idx_scrapes_status", table_name="scrapes")
    op.drop_table("scrapes")
