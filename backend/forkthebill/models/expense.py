"""
models/expense.py — Expense table definition.

No business logic. No imports from services or routes.

Key design points:
  - One row per expense. Header fields the share preview and listings read
    (slug, restaurant_name, payer_name, total_amount) are real columns;
    items, participants and adjustments live in the `document` JSON column
    and are always written together with them.
  - `total_amount` uses Numeric(12, 2) — never Float. It is a denormalised
    copy of the engine's derived total, rewritten on every save.
  - `version` is the compare-and-swap counter. Every successful write bumps
    it by one; a write that expects a stale version matches no row and is
    reported as a conflict by the repository.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.forkthebill.extensions import db


class ExpenseRecord(db.Model):
    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_expenses_version_positive"),
        CheckConstraint(
            "LENGTH(TRIM(payer_name)) > 0",
            name="ck_expenses_payer_name_nonempty",
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Human-shareable identifier used in every URL.
    slug: Mapped[str] = mapped_column(
        String(80),
        nullable=False,
        unique=True,
        index=True,
    )

    restaurant_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    payer_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    # {"items": [...], "participants": [...], "tax": "...", ...}
    # Amounts inside the document are stored as strings.
    document: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<ExpenseRecord id={self.id} "
            f"slug={self.slug} "
            f"version={self.version}>"
        )
