"""
Unit tests for expense_service and the in-memory repository.

These tests stay DB-free: the service runs against InMemoryExpenseRepository,
and conflict handling is driven with a repository wrapper that injects
ConflictError on save.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from unittest.mock import patch

import pytest

from backend.forkthebill.engine import operations
from backend.forkthebill.errors import AppError, ConflictError, ErrorCode, NotFoundError
from backend.forkthebill.repositories.expense_repository import InMemoryExpenseRepository
from backend.forkthebill.services import expense_service


class _ConflictingRepository:
    """
    Delegates to an in-memory repository. Before each of the first
    `conflicts` saves, another writer renames the restaurant first.
    """

    def __init__(self, inner: InMemoryExpenseRepository, conflicts: int) -> None:
        self.inner = inner
        self.conflicts = conflicts
        self.save_calls = 0

    def get(self, slug):
        return self.inner.get(slug)

    def slug_exists(self, slug):
        return self.inner.slug_exists(slug)

    def add(self, expense):
        return self.inner.add(expense)

    def save(self, expense):
        self.save_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            current = self.inner.get(expense.slug)
            self.inner.save(replace(current, restaurant_name=f"{current.restaurant_name}!"))
        return self.inner.save(expense)


@pytest.fixture
def repo():
    return InMemoryExpenseRepository()


@pytest.fixture
def created(repo):
    return expense_service.create_expense(
        {
            "payer_name": "Alice",
            "restaurant_name": "Olive Garden",
            "items": [
                {"name": "Pizza", "price": Decimal("18.00")},
                {"name": "Salad", "price": Decimal("12.50")},
            ],
            "tax": Decimal("3.05"),
            "service_charge": Decimal("0"),
            "discount": Decimal("0"),
            "people": [],
        },
        repo,
    )


# ── Slugs ──────────────────────────────────────────────────────────────────

def test_slugify():
    assert expense_service._slugify("Olive Garden!") == "olive-garden"
    assert expense_service._slugify("   ") == ""


def test_generated_slug_uses_restaurant_name(created):
    assert created.slug.startswith("olive-garden-")
    assert len(created.slug) == len("olive-garden-") + 8


def test_generated_slug_without_name_is_bare_suffix(repo):
    slug = expense_service._generate_slug("", repo)

    assert len(slug) == 8


def test_generate_slug_gives_up_after_repeated_collisions(repo):
    with patch.object(repo, "slug_exists", return_value=True):
        with pytest.raises(AppError) as exc_info:
            expense_service._generate_slug("Diner", repo)

    assert exc_info.value.code == ErrorCode.INTERNAL_ERROR


# ── Create / get ───────────────────────────────────────────────────────────

def test_create_stores_version_one(repo, created):
    assert created.version == 1
    assert repo.get(created.slug) == created


def test_get_missing_expense_is_not_found(repo):
    with pytest.raises(NotFoundError) as exc_info:
        expense_service.get_expense("missing", repo)

    assert exc_info.value.code == ErrorCode.EXPENSE_NOT_FOUND


# ── Mutations ──────────────────────────────────────────────────────────────

def test_claim_by_participant_id_resolves_name(repo, created):
    pizza = created.items[0].id
    payer_id = created.participants[0].id

    updated = expense_service.claim_item(created.slug, pizza, payer_id, repo)

    assert updated.items[0].claimants == (payer_id,)
    assert len(updated.participants) == 1
    assert updated.version == 2


def test_claim_by_new_name_adds_participant(repo, created):
    updated = expense_service.claim_item(created.slug, created.items[1].id, "Bob", repo)

    bob = updated.find_participant("Bob")
    assert bob.items_subtotal == Decimal("12.50")


def test_idempotent_mutation_skips_write(repo, created):
    pizza = created.items[0].id
    once = expense_service.claim_item(created.slug, pizza, "Alice", repo)

    twice = expense_service.claim_item(created.slug, pizza, "Alice", repo)

    assert twice == once
    assert twice.version == once.version


def test_unclaim_round_trip(repo, created):
    pizza = created.items[0].id
    claimed = expense_service.claim_item(created.slug, pizza, "Bob", repo)
    bob_id = claimed.find_participant("Bob").id

    updated = expense_service.unclaim_item(created.slug, pizza, bob_id, repo)

    assert updated.items[0].claimants == ()


def test_add_item_and_adjustments(repo, created):
    updated = expense_service.add_item(
        created.slug,
        {"name": "Coke", "total_price": Decimal("9.00"), "quantity": 3},
        repo,
    )
    updated = expense_service.update_adjustments(
        created.slug,
        {"service_charge": Decimal("2.00")},
        repo,
    )

    assert len(updated.items) == 5
    assert updated.service_charge == Decimal("2.00")
    assert updated.tax == Decimal("3.05")


def test_add_participant_and_finish(repo, created):
    expense_service.add_participant(created.slug, {"name": "Bob"}, repo)
    updated = expense_service.set_finished(created.slug, "Bob", True, repo)

    assert updated.find_participant("Bob").is_finished is True


def test_toggle_by_id(repo, created):
    payer_id = created.participants[0].id

    updated = expense_service.toggle_finished(created.slug, payer_id, repo)

    assert updated.participants[0].is_finished is True
    assert len(updated.participants) == 1


def test_replace_expense(repo, created):
    updated = expense_service.replace_expense(
        created.slug,
        {"restaurant_name": "Olive Garden Downtown", "tax": Decimal("4.00"), "people": []},
        repo,
    )

    assert updated.restaurant_name == "Olive Garden Downtown"
    assert updated.tax == Decimal("4.00")
    assert updated.slug == created.slug


# ── Conflict handling ──────────────────────────────────────────────────────

def test_conflict_is_retried_against_fresh_state(repo, created):
    conflicting = _ConflictingRepository(repo, conflicts=1)

    updated = expense_service.claim_item(
        created.slug, created.items[0].id, "Bob", conflicting, max_attempts=3
    )

    assert conflicting.save_calls == 2
    # The concurrent writer's change survives alongside the claim.
    assert updated.restaurant_name == "Olive Garden!"
    assert updated.items[0].claimants == (updated.find_participant("Bob").id,)


def test_conflict_surfaces_after_max_attempts(repo, created):
    conflicting = _ConflictingRepository(repo, conflicts=5)

    with pytest.raises(ConflictError) as exc_info:
        expense_service.claim_item(
            created.slug, created.items[0].id, "Bob", conflicting, max_attempts=2
        )

    assert exc_info.value.http_status == 409
    assert exc_info.value.code == ErrorCode.EXPENSE_CONFLICT
    assert conflicting.save_calls == 2
    assert repo.get(created.slug).find_participant("Bob") is None


def test_concurrent_claims_on_different_items_both_survive(repo, created):
    pizza, salad = created.items[0].id, created.items[1].id

    # Both writers read version 1; the second save must re-apply its claim.
    stale = repo.get(created.slug)
    expense_service.claim_item(created.slug, pizza, "Bob", repo)

    with pytest.raises(ConflictError):
        repo.save(operations.claim_item(stale, salad, "Carol"))

    updated = expense_service.claim_item(created.slug, salad, "Carol", repo)
    assert updated.find_item(pizza).claimants
    assert updated.find_item(salad).claimants


# ── InMemoryExpenseRepository ─────────────────────────────────────────────

def test_in_memory_add_rejects_duplicate_slug(repo, created):
    with pytest.raises(ConflictError):
        repo.add(created)


def test_in_memory_save_of_unknown_slug_is_not_found(repo, created):
    with pytest.raises(NotFoundError):
        repo.save(replace(created, slug="other"))
