"""
services/expense_service.py — Expense use cases on top of the engine.

Every mutating request follows the same read-modify-write loop:

    1. load the latest stored expense (version N)
    2. apply ONE pure engine operation to it
    3. save with compare-and-swap on version N

If another writer saved in between, step 3 raises ConflictError and the loop
starts again from step 1 against the fresh state, so two concurrent claims
on different items both survive and concurrent claims on the same item never
drop a claimant. After max_attempts conflicts the ConflictError is surfaced
to the caller (409).

Operations that produce an unchanged expense (idempotent repeats) skip the
write entirely.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives a repository; never reaches for a global store.
  - Commits are the route's responsibility — repositories only flush.
"""

from __future__ import annotations

import logging
import re
import secrets
from typing import Callable, Protocol

from backend.forkthebill.engine import operations
from backend.forkthebill.engine.models import Expense
from backend.forkthebill.errors import AppError, ConflictError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
_SLUG_SUFFIX_BYTES = 4
_SLUG_MAX_PREFIX = 40
_SLUG_MAX_TRIES = 5


class ExpenseRepository(Protocol):

    def get(self, slug: str) -> Expense: ...

    def slug_exists(self, slug: str) -> bool: ...

    def add(self, expense: Expense) -> Expense: ...

    def save(self, expense: Expense) -> Expense: ...


Operation = Callable[[Expense], Expense]


# ── Private helpers ────────────────────────────────────────────────────────

def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:_SLUG_MAX_PREFIX].rstrip("-")


def _generate_slug(restaurant_name: str, repository: ExpenseRepository) -> str:
    """
    "Olive Garden" → "olive-garden-3f9a1c2e". Falls back to the bare suffix
    when the name has no usable characters.
    """
    prefix = _slugify(restaurant_name or "")
    for _ in range(_SLUG_MAX_TRIES):
        suffix = secrets.token_hex(_SLUG_SUFFIX_BYTES)
        slug = f"{prefix}-{suffix}" if prefix else suffix
        if not repository.slug_exists(slug):
            return slug
    raise AppError(
        ErrorCode.INTERNAL_ERROR,
        f"Could not generate a unique slug after {_SLUG_MAX_TRIES} attempts.",
        500,
    )


# ── Public service functions ───────────────────────────────────────────────

def get_expense(slug: str, repository: ExpenseRepository) -> Expense:
    """Returns the expense or raises EXPENSE_NOT_FOUND (404)."""
    return repository.get(slug)


def create_expense(data: dict, repository: ExpenseRepository) -> Expense:
    """
    Creates and stores a new expense.

    Args:
        data: Validated dict from CreateExpenseSchema (snake_case keys).
    """
    slug = _generate_slug(data.get("restaurant_name", ""), repository)
    expense = operations.create_expense(
        payer_name=data["payer_name"],
        restaurant_name=data.get("restaurant_name", ""),
        items=data.get("items", []),
        tax=data.get("tax", 0),
        service_charge=data.get("service_charge", 0),
        discount=data.get("discount", 0),
        people=data.get("people", []),
        slug=slug,
    )
    stored = repository.add(expense)
    logger.info(
        "Created expense %s with %d items for payer %r",
        stored.slug,
        len(stored.items),
        stored.payer_name,
    )
    return stored


def mutate_expense(
        slug: str,
        operation: Operation,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    """
    Applies operation to the latest stored state of slug, retrying on
    conflict. Returns the stored result.
    """
    for attempt in range(1, max_attempts + 1):
        current = repository.get(slug)
        updated = operation(current)

        if updated == current:
            return current

        try:
            return repository.save(updated)
        except ConflictError:
            logger.warning(
                "Write conflict on expense %s (attempt %d of %d)",
                slug,
                attempt,
                max_attempts,
            )

    raise ConflictError(
        f"Expense {slug} is being changed by others; "
        f"gave up after {max_attempts} attempts."
    )


def replace_expense(
        slug: str,
        data: dict,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    """PUT /expense/:slug — data is validated by ReplaceExpenseSchema."""
    return mutate_expense(
        slug,
        lambda expense: operations.replace_expense(
            expense,
            payer_name=data.get("payer_name"),
            restaurant_name=data.get("restaurant_name"),
            items=data.get("items"),
            tax=data.get("tax"),
            service_charge=data.get("service_charge"),
            discount=data.get("discount"),
            people=data.get("people", []),
        ),
        repository,
        max_attempts,
    )


def claim_item(
        slug: str,
        item_id: str,
        participant_ref: str,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    """
    participant_ref resolves as an existing participant id first; otherwise it
    is the display name of the (possibly new) claimant.
    """
    return mutate_expense(
        slug,
        lambda expense: operations.claim_item(expense, item_id, participant_ref),
        repository,
        max_attempts,
    )


def unclaim_item(
        slug: str,
        item_id: str,
        participant_ref: str,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    return mutate_expense(
        slug,
        lambda expense: operations.unclaim_item(expense, item_id, participant_ref),
        repository,
        max_attempts,
    )


def add_item(
        slug: str,
        data: dict,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    """
    Not retried blindly: the operation runs once per attempt against fresh
    state, and only a successful save appends the items.
    """
    return mutate_expense(
        slug,
        lambda expense: operations.add_item(
            expense,
            data["name"],
            data["total_price"],
            data.get("quantity", 1),
        ),
        repository,
        max_attempts,
    )


def update_adjustments(
        slug: str,
        data: dict,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    return mutate_expense(
        slug,
        lambda expense: operations.update_adjustments(
            expense,
            tax=data.get("tax"),
            service_charge=data.get("service_charge"),
            discount=data.get("discount"),
        ),
        repository,
        max_attempts,
    )


def add_participant(
        slug: str,
        data: dict,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    return mutate_expense(
        slug,
        lambda expense: operations.add_participant(
            expense,
            data["name"],
            is_finished=data.get("is_finished", False),
        ),
        repository,
        max_attempts,
    )


def set_finished(
        slug: str,
        participant_ref: str,
        finished: bool,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    return mutate_expense(
        slug,
        lambda expense: operations.set_finished(expense, participant_ref, finished),
        repository,
        max_attempts,
    )


def toggle_finished(
        slug: str,
        participant_ref: str,
        repository: ExpenseRepository,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Expense:
    return mutate_expense(
        slug,
        lambda expense: operations.toggle_finished(expense, participant_ref),
        repository,
        max_attempts,
    )
