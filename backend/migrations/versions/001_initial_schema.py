"""Initial schema — the expenses table.

Revision: 001_initial_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

One row per expense. Items, participants and adjustments are stored in the
`document` JSON column; `version` is the compare-and-swap counter the
repository checks on every write.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:
    op.create_table(
        "expenses",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("slug", sa.String(80), nullable=False),
        sa.Column(
            "restaurant_name",
            sa.String(255),
            nullable=False,
            server_default=sa.text("''"),
        ),
        sa.Column("payer_name", sa.String(255), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("document", sa.JSON(), nullable=False),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_expenses"),
        sa.CheckConstraint(
            "version >= 1",
            name="ck_expenses_version_positive",
        ),
        sa.CheckConstraint(
            "LENGTH(TRIM(payer_name)) > 0",
            name="ck_expenses_payer_name_nonempty",
        ),
    )

    # Every URL looks an expense up by slug.
    op.create_index("ix_expenses_slug", "expenses", ["slug"], unique=True)


def downgrade() -> None:
    """
    Provided for local development reset. In production, prefer a
    corrective migration over a rollback.
    """
    op.drop_index("ix_expenses_slug", table_name="expenses")
    op.drop_table("expenses")
