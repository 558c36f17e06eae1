"""
engine/models.py — Item, Participant and Expense values.

These are plain immutable values, not database rows. Every change produces a
new value via dataclasses.replace(); nothing here mutates in place, so a
failed operation can never leave an expense half-updated.

Derived participant fields (items_subtotal, the three shares, total_owed,
items_claimed) are written only by engine.split.apply_split().
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from backend.forkthebill.engine.money import ZERO, divide_evenly


def new_id() -> str:
    """Opaque identifier for items, participants and expenses."""
    return uuid.uuid4().hex


_ID_PATTERN = re.compile(r"[0-9a-f]{32}")


def looks_like_id(ref: str) -> bool:
    """True for strings shaped like new_id() output."""
    return _ID_PATTERN.fullmatch(ref) is not None


@dataclass(frozen=True)
class Item:
    id: str
    name: str
    price: Decimal
    quantity_index: int = 1
    total_quantity: int = 1
    claimants: tuple[str, ...] = ()

    def add_claimant(self, participant_id: str) -> Item:
        """Idempotent: adding a present claimant returns an equal item."""
        if participant_id in self.claimants:
            return self
        return replace(self, claimants=tuple(sorted((*self.claimants, participant_id))))

    def remove_claimant(self, participant_id: str) -> Item:
        """Idempotent: removing an absent claimant returns an equal item."""
        if participant_id not in self.claimants:
            return self
        return replace(
            self,
            claimants=tuple(c for c in self.claimants if c != participant_id),
        )

    @property
    def is_claimed(self) -> bool:
        return bool(self.claimants)

    def per_claimant_share(self) -> dict[str, Decimal]:
        """
        Maps each claimant to their exact share of the price.

        Shares come from divide_evenly in sorted claimant order, so the odd
        cent of an uneven split always lands on the same claimant. An
        unclaimed item returns {} — its price is owed by nobody.
        """
        if not self.claimants:
            return {}
        shares = divide_evenly(self.price, len(self.claimants))
        return dict(zip(self.claimants, shares))


@dataclass(frozen=True)
class Participant:
    id: str
    name: str
    is_finished: bool = False

    # Derived: recomputed by the split engine after every mutation.
    items_subtotal: Decimal = ZERO
    tax_share: Decimal = ZERO
    service_charge_share: Decimal = ZERO
    discount_share: Decimal = ZERO
    total_owed: Decimal = ZERO
    items_claimed: tuple[str, ...] = ()


@dataclass(frozen=True)
class Expense:
    id: str
    slug: str
    restaurant_name: str
    payer_name: str
    created_at: datetime
    items: tuple[Item, ...] = ()
    participants: tuple[Participant, ...] = ()
    tax: Decimal = ZERO
    service_charge: Decimal = ZERO
    discount: Decimal = ZERO

    # Storage version for compare-and-swap. Not part of the expense's value.
    version: int = field(default=0, compare=False)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.price for item in self.items), ZERO)

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal + self.tax + self.service_charge - self.discount

    @property
    def unattributed_amount(self) -> Decimal:
        """Money not yet owed by anyone because items are unclaimed."""
        return self.total_amount - sum((p.total_owed for p in self.participants), ZERO)

    def find_item(self, item_id: str) -> Item | None:
        return next((i for i in self.items if i.id == item_id), None)

    def find_participant(self, name: str) -> Participant | None:
        """Exact, case-sensitive name match."""
        return next((p for p in self.participants if p.name == name), None)

    def find_participant_by_id(self, participant_id: str) -> Participant | None:
        return next((p for p in self.participants if p.id == participant_id), None)

    def resolve_participant(self, ref: str) -> Participant | None:
        """Resolves an id first, then an exact name."""
        return self.find_participant_by_id(ref) or self.find_participant(ref)
