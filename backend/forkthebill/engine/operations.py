"""
engine/operations.py — Mutation operations over an Expense value.

Every operation is a total function (expense, input) → new expense:
  - All validation happens before the new value is built. On failure the
    caller still holds the original, untouched expense.
  - Every result passes through split.apply_split(), so shares are never stale.
  - Re-applying the same input to the result changes nothing, except for
    add_item, which appends new items on every call.

Participant identity is the exact display name. Operations that accept a
"ref" resolve it as a participant id first, then as a name. A ref shaped
like a generated id never creates a participant.

No storage, no Flask, no clock reads beyond the created_at default.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable

from backend.forkthebill.engine.models import (
    Expense,
    Item,
    Participant,
    looks_like_id,
    new_id,
)
from backend.forkthebill.engine.money import divide_evenly, to_money
from backend.forkthebill.engine.split import apply_split
from backend.forkthebill.errors import (
    ErrorCode,
    InvalidStateError,
    NotFoundError,
)

IdFactory = Callable[[], str]


# ── Private helpers ────────────────────────────────────────────────────────

def _get_item_or_404(expense: Expense, item_id: str) -> Item:
    item = expense.find_item(item_id)
    if item is None:
        raise NotFoundError(
            ErrorCode.ITEM_NOT_FOUND,
            f"Item {item_id} does not exist on expense {expense.slug}.",
            field="itemId",
        )
    return item


def _get_participant_or_404(expense: Expense, ref: str) -> Participant:
    participant = expense.resolve_participant(ref)
    if participant is None:
        raise NotFoundError(
            ErrorCode.PARTICIPANT_NOT_FOUND,
            f"Participant {ref!r} does not exist on expense {expense.slug}.",
            field="participantId",
        )
    return participant


def _validate_name(name: str, field: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidStateError(
            ErrorCode.BLANK_NAME,
            f"{field} must not be blank.",
            field=field,
        )
    return name


def _validate_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidStateError(
            ErrorCode.INVALID_QUANTITY,
            f"Quantity must be a positive integer, got {quantity!r}.",
            field="quantity",
        )
    return quantity


def _ensure_participant(
        expense: Expense,
        name: str,
        id_factory: IdFactory,
) -> tuple[Expense, Participant]:
    """Returns the named participant, materializing them with zero shares if absent."""
    existing = expense.find_participant(name)
    if existing is not None:
        return expense, existing
    participant = Participant(id=id_factory(), name=_validate_name(name, "name"))
    return replace(expense, participants=(*expense.participants, participant)), participant


def _resolve_or_create(
        expense: Expense,
        ref: str,
        id_factory: IdFactory,
) -> tuple[Expense, Participant]:
    """
    Resolves ref as an id, then a name. An unknown name is materialized;
    an unknown id is NotFoundError.
    """
    participant = expense.resolve_participant(ref)
    if participant is not None:
        return expense, participant
    if looks_like_id(ref):
        _get_participant_or_404(expense, ref)
    return _ensure_participant(expense, ref, id_factory)


def _replace_item(expense: Expense, updated: Item) -> Expense:
    return replace(
        expense,
        items=tuple(updated if i.id == updated.id else i for i in expense.items),
    )


def _replace_participant(expense: Expense, updated: Participant) -> Expense:
    return replace(
        expense,
        participants=tuple(
            updated if p.id == updated.id else p for p in expense.participants
        ),
    )


def _merge_people(
        expense: Expense,
        people: Iterable[dict],
        id_factory: IdFactory,
) -> Expense:
    """
    Adds unknown names; a known name only takes the "is_finished" flag,
    when one is given.
    """
    for person in people:
        _validate_name(person["name"], "name")
        existing = expense.find_participant(person["name"])
        if existing is None:
            participant = Participant(
                id=id_factory(),
                name=person["name"],
                is_finished=bool(person.get("is_finished", False)),
            )
            expense = replace(expense, participants=(*expense.participants, participant))
        elif "is_finished" in person:
            expense = _replace_participant(
                expense,
                replace(existing, is_finished=bool(person["is_finished"])),
            )
    return expense


def _build_items(
        name: str,
        total_price: Decimal,
        quantity: int,
        id_factory: IdFactory,
) -> list[Item]:
    """
    Splits a quantity-N order into N sibling items with prices that sum
    exactly to total_price. Quantity 1 yields a single, ungrouped item.
    """
    prices = divide_evenly(total_price, quantity)
    return [
        Item(
            id=id_factory(),
            name=name,
            price=price,
            quantity_index=index,
            total_quantity=quantity,
        )
        for index, price in enumerate(prices, start=1)
    ]


# ── Public operations ──────────────────────────────────────────────────────

def create_expense(
        payer_name: str,
        restaurant_name: str = "",
        items: Iterable[dict] = (),
        tax=0,
        service_charge=0,
        discount=0,
        people: Iterable[dict] = (),
        slug: str | None = None,
        created_at: datetime | None = None,
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Builds a new expense. The payer is always the first participant and
    starts with zero claims.

    items:  dicts with "name", "price" (the line total) and optional
            "quantity" (default 1).
    people: dicts with "name" and optional "is_finished"; merged in by name.
    """
    _validate_name(payer_name, "payerName")
    tax = to_money(tax, field="tax")
    service_charge = to_money(service_charge, field="serviceCharge")
    discount = to_money(discount, field="discount")

    built_items: list[Item] = []
    for raw in items:
        built_items.extend(
            _build_items(
                _validate_name(raw["name"], "name"),
                to_money(raw["price"], field="price"),
                _validate_quantity(raw.get("quantity", 1)),
                id_factory,
            )
        )

    expense_id = id_factory()
    expense = Expense(
        id=expense_id,
        slug=slug or expense_id,
        restaurant_name=restaurant_name or "",
        payer_name=payer_name,
        created_at=created_at or datetime.now(timezone.utc),
        items=tuple(built_items),
        participants=(Participant(id=id_factory(), name=payer_name),),
        tax=tax,
        service_charge=service_charge,
        discount=discount,
    )

    return apply_split(_merge_people(expense, people, id_factory))


def claim_item(
        expense: Expense,
        item_id: str,
        participant_name: str,
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Records that participant_name shares item_id.

    participant_name may also be an existing participant id. If no participant
    has that name yet, one is created first (zero shares, is_finished=False);
    an unknown id is NotFoundError. Claiming an item twice is a no-op.
    """
    item = _get_item_or_404(expense, item_id)
    _validate_name(participant_name, "participantName")

    expense, participant = _resolve_or_create(expense, participant_name, id_factory)
    expense = _replace_item(expense, item.add_claimant(participant.id))
    return apply_split(expense)


def unclaim_item(expense: Expense, item_id: str, participant_ref: str) -> Expense:
    """
    Removes participant_ref's claim on item_id.

    Unknown item or participant → NotFoundError. A participant who exists but
    never claimed the item is a no-op; shares are recomputed regardless.
    """
    item = _get_item_or_404(expense, item_id)
    participant = _get_participant_or_404(expense, participant_ref)

    expense = _replace_item(expense, item.remove_claimant(participant.id))
    return apply_split(expense)


def add_item(
        expense: Expense,
        name: str,
        total_price,
        quantity: int = 1,
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Appends `quantity` unclaimed sibling items whose prices sum to total_price.

    Not idempotent: every call appends new items.
    """
    _validate_name(name, "name")
    _validate_quantity(quantity)
    total_price = to_money(total_price, field="totalPrice")

    new_items = _build_items(name, total_price, quantity, id_factory)
    return apply_split(replace(expense, items=(*expense.items, *new_items)))


def update_adjustments(
        expense: Expense,
        tax=None,
        service_charge=None,
        discount=None,
) -> Expense:
    """Replaces the provided adjustments; None keeps the current value."""
    changes = {}
    if tax is not None:
        changes["tax"] = to_money(tax, field="tax")
    if service_charge is not None:
        changes["service_charge"] = to_money(service_charge, field="serviceCharge")
    if discount is not None:
        changes["discount"] = to_money(discount, field="discount")

    return apply_split(replace(expense, **changes))


def add_participant(
        expense: Expense,
        name: str,
        is_finished: bool = False,
        id_factory: IdFactory = new_id,
) -> Expense:
    """Adds a participant by name. An existing name is left as it is."""
    _validate_name(name, "name")
    if expense.find_participant(name) is not None:
        return expense

    participant = Participant(id=id_factory(), name=name, is_finished=bool(is_finished))
    return apply_split(replace(expense, participants=(*expense.participants, participant)))


def toggle_finished(
        expense: Expense,
        participant_name: str,
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Flips a participant's finished flag, creating them first if needed.
    Accepts an id or a name, like set_finished.

    The flag has no monetary effect.
    """
    _validate_name(participant_name, "participantName")
    expense, participant = _resolve_or_create(expense, participant_name, id_factory)
    expense = _replace_participant(
        expense,
        replace(participant, is_finished=not participant.is_finished),
    )
    return apply_split(expense)


def set_finished(
        expense: Expense,
        participant_ref: str,
        finished: bool,
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Sets a participant's finished flag. Idempotent.

    participant_ref resolves as an id, then as a name; an unknown name
    materializes a new participant and an unknown id is NotFoundError.
    """
    _validate_name(participant_ref, "participantId")
    expense, participant = _resolve_or_create(expense, participant_ref, id_factory)

    if participant.is_finished == finished:
        return apply_split(expense)
    expense = _replace_participant(expense, replace(participant, is_finished=finished))
    return apply_split(expense)


def replace_expense(
        expense: Expense,
        payer_name: str | None = None,
        restaurant_name: str | None = None,
        items: Iterable[dict] | None = None,
        tax=None,
        service_charge=None,
        discount=None,
        people: Iterable[dict] = (),
        id_factory: IdFactory = new_id,
) -> Expense:
    """
    Full-document update (PUT).

    items:  dicts with "name", "price" and optional "id", "quantity",
            "total_quantity", "claimed_by". A known id keeps the item's
            identity and, unless given, its claimants and grouping. Items
            missing from the list are removed along with their claims.
            The price of a listed item is that unit's price; nothing is split.
    people: merged in by name. Participants are never removed.

    Validates the whole payload before building the result.
    """
    updated = expense

    if payer_name is not None:
        _validate_name(payer_name, "payerName")
        updated = replace(updated, payer_name=payer_name)
        updated, _ = _ensure_participant(updated, payer_name, id_factory)
    if restaurant_name is not None:
        updated = replace(updated, restaurant_name=restaurant_name)

    updated = _merge_people(updated, people, id_factory)

    if items is not None:
        new_items = []
        seen_ids: set[str] = set()
        for raw in items:
            name = _validate_name(raw["name"], "name")
            price = to_money(raw["price"], field="price")
            previous = updated.find_item(raw["id"]) if raw.get("id") else None

            total_quantity = raw.get("total_quantity")
            if total_quantity is None:
                total_quantity = previous.total_quantity if previous else 1
            _validate_quantity(total_quantity)
            quantity_index = raw.get("quantity")
            if quantity_index is None:
                quantity_index = previous.quantity_index if previous else 1
            if not (
                isinstance(quantity_index, int)
                and 1 <= quantity_index <= total_quantity
            ):
                raise InvalidStateError(
                    ErrorCode.INVALID_QUANTITY,
                    f"Item quantity index {quantity_index!r} is outside "
                    f"1..{total_quantity}.",
                    field="quantity",
                )

            if raw.get("id"):
                if raw["id"] in seen_ids:
                    raise InvalidStateError(
                        ErrorCode.DUPLICATE_ITEM,
                        f"Item {raw['id']} appears more than once.",
                        field="items",
                    )
                seen_ids.add(raw["id"])

            if raw.get("claimed_by") is not None:
                claimants = tuple(sorted({
                    _get_participant_or_404(updated, ref).id
                    for ref in raw["claimed_by"]
                }))
            elif previous is not None:
                claimants = previous.claimants
            else:
                claimants = ()

            new_items.append(Item(
                id=raw.get("id") or id_factory(),
                name=name,
                price=price,
                quantity_index=quantity_index,
                total_quantity=total_quantity,
                claimants=claimants,
            ))
        updated = replace(updated, items=tuple(new_items))

    updated = update_adjustments(
        updated,
        tax=tax,
        service_charge=service_charge,
        discount=discount,
    )
    return updated
