"""
repositories/expense_repository.py — Storage boundary for expense values.

The engine never touches storage. Services load an Expense through a
repository, run an engine operation on it, and hand the result back to
save(), which performs a compare-and-swap on Expense.version:

    current = repo.get(slug)                  # version N
    updated = operations.claim_item(current, ...)
    repo.save(updated)                        # writes only if still N → N+1

A save against a stale version raises ConflictError and writes nothing.
Version checks are scoped to one expense; nothing here takes a global lock.

Two implementations:
  SqlExpenseRepository       — SQLAlchemy session, used by the Flask app
  InMemoryExpenseRepository  — dict + per-slug locks, used by unit tests and
                               scripts that need no database
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from backend.forkthebill.engine.models import Expense, Item, Participant
from backend.forkthebill.errors import ConflictError, ErrorCode, NotFoundError
from backend.forkthebill.models.expense import ExpenseRecord


def _expense_not_found(slug: str) -> NotFoundError:
    return NotFoundError(
        ErrorCode.EXPENSE_NOT_FOUND,
        f"Expense {slug} does not exist.",
    )


# ── Document codec ─────────────────────────────────────────────────────────
# Amounts are stored as strings to keep Decimal precision through JSON.

def to_document(expense: Expense) -> dict:
    return {
        "tax": str(expense.tax),
        "service_charge": str(expense.service_charge),
        "discount": str(expense.discount),
        "items": [
            {
                "id": item.id,
                "name": item.name,
                "price": str(item.price),
                "quantity_index": item.quantity_index,
                "total_quantity": item.total_quantity,
                "claimants": list(item.claimants),
            }
            for item in expense.items
        ],
        "participants": [
            {
                "id": p.id,
                "name": p.name,
                "is_finished": p.is_finished,
                "items_subtotal": str(p.items_subtotal),
                "tax_share": str(p.tax_share),
                "service_charge_share": str(p.service_charge_share),
                "discount_share": str(p.discount_share),
                "total_owed": str(p.total_owed),
                "items_claimed": list(p.items_claimed),
            }
            for p in expense.participants
        ],
    }


def from_document(
        *,
        id: str,
        slug: str,
        restaurant_name: str,
        payer_name: str,
        created_at: datetime,
        version: int,
        document: dict,
) -> Expense:
    return Expense(
        id=id,
        slug=slug,
        restaurant_name=restaurant_name,
        payer_name=payer_name,
        created_at=created_at,
        items=tuple(
            Item(
                id=raw["id"],
                name=raw["name"],
                price=Decimal(raw["price"]),
                quantity_index=raw["quantity_index"],
                total_quantity=raw["total_quantity"],
                claimants=tuple(raw["claimants"]),
            )
            for raw in document.get("items", [])
        ),
        participants=tuple(
            Participant(
                id=raw["id"],
                name=raw["name"],
                is_finished=raw["is_finished"],
                items_subtotal=Decimal(raw["items_subtotal"]),
                tax_share=Decimal(raw["tax_share"]),
                service_charge_share=Decimal(raw["service_charge_share"]),
                discount_share=Decimal(raw["discount_share"]),
                total_owed=Decimal(raw["total_owed"]),
                items_claimed=tuple(raw["items_claimed"]),
            )
            for raw in document.get("participants", [])
        ),
        tax=Decimal(document["tax"]),
        service_charge=Decimal(document["service_charge"]),
        discount=Decimal(document["discount"]),
        version=version,
    )


# ── SQLAlchemy implementation ──────────────────────────────────────────────

class SqlExpenseRepository:
    """
    Persists expenses as ExpenseRecord rows.

    Only flushes. Commits are the route's responsibility, so a request that
    fails after save() rolls back as a whole.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _record(self, slug: str) -> ExpenseRecord | None:
        stmt = (
            select(ExpenseRecord)
            .where(ExpenseRecord.slug == slug)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get(self, slug: str) -> Expense:
        record = self._record(slug)
        if record is None:
            raise _expense_not_found(slug)
        created_at = record.created_at
        if created_at.tzinfo is None:
            # SQLite drops the offset; values are always written in UTC.
            created_at = created_at.replace(tzinfo=timezone.utc)
        return from_document(
            id=record.id,
            slug=record.slug,
            restaurant_name=record.restaurant_name,
            payer_name=record.payer_name,
            created_at=created_at,
            version=record.version,
            document=record.document,
        )

    def slug_exists(self, slug: str) -> bool:
        stmt = select(ExpenseRecord.id).where(ExpenseRecord.slug == slug)
        return self.session.execute(stmt).first() is not None

    def add(self, expense: Expense) -> Expense:
        """Inserts a new expense at version 1."""
        self.session.add(ExpenseRecord(
            id=expense.id,
            slug=expense.slug,
            restaurant_name=expense.restaurant_name,
            payer_name=expense.payer_name,
            total_amount=expense.total_amount,
            document=to_document(expense),
            version=1,
            created_at=expense.created_at,
        ))
        self.session.flush()
        return replace(expense, version=1)

    def save(self, expense: Expense) -> Expense:
        """
        Writes expense if the stored version still equals expense.version.

        Raises ConflictError when another writer got there first.
        """
        stmt = (
            update(ExpenseRecord)
            .where(
                ExpenseRecord.id == expense.id,
                ExpenseRecord.version == expense.version,
            )
            .values(
                restaurant_name=expense.restaurant_name,
                payer_name=expense.payer_name,
                total_amount=expense.total_amount,
                document=to_document(expense),
                version=expense.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            raise ConflictError(
                f"Expense {expense.slug} was changed by someone else "
                f"(expected version {expense.version})."
            )
        self.session.flush()
        return replace(expense, version=expense.version + 1)


# ── In-memory implementation ───────────────────────────────────────────────

class InMemoryExpenseRepository:
    """Dict-backed repository with the same compare-and-swap contract."""

    def __init__(self) -> None:
        self._expenses: dict[str, Expense] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, slug: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(slug, threading.Lock())

    def get(self, slug: str) -> Expense:
        expense = self._expenses.get(slug)
        if expense is None:
            raise _expense_not_found(slug)
        return expense

    def slug_exists(self, slug: str) -> bool:
        return slug in self._expenses

    def add(self, expense: Expense) -> Expense:
        with self._lock_for(expense.slug):
            if expense.slug in self._expenses:
                raise ConflictError(f"Expense {expense.slug} already exists.")
            stored = replace(expense, version=1)
            self._expenses[expense.slug] = stored
            return stored

    def save(self, expense: Expense) -> Expense:
        with self._lock_for(expense.slug):
            current = self._expenses.get(expense.slug)
            if current is None:
                raise _expense_not_found(expense.slug)
            if current.version != expense.version:
                raise ConflictError(
                    f"Expense {expense.slug} was changed by someone else "
                    f"(expected version {expense.version}, "
                    f"found {current.version})."
                )
            stored = replace(expense, version=expense.version + 1)
            self._expenses[expense.slug] = stored
            return stored
