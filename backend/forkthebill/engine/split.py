"""
engine/split.py — Split computation.

This file is the SINGLE SOURCE OF TRUTH for how a bill is split. Shares are
always recomputed from scratch; they are never patched incrementally.

Algorithm:
  1. subtotal = sum(item.price)
  2. items_subtotal(p) = sum of p's exact share of every item p claims
  3. tax, service charge and discount are each allocated proportionally to
     items_subtotal(p) / subtotal, never per head
  4. total_owed(p) = items_subtotal + tax_share + service_charge_share
                     - discount_share

Unclaimed items:
  Their price counts towards subtotal but towards nobody's items_subtotal.
  They also act as an extra, unattributed bucket in the proportional
  allocation, so every participant still pays exactly
  adjustment * items_subtotal(p) / subtotal. The sum of total_owed is then
  less than total_amount; that gap is "money not yet allocated", not an error.

Rounding:
  Item prices are divided with money.divide_evenly and adjustments with
  money.allocate_proportionally (largest remainder). When every item is
  claimed, sum(total_owed) == total_amount exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable, Sequence

from backend.forkthebill.engine.models import Expense, Item, Participant
from backend.forkthebill.engine.money import ZERO, allocate_proportionally
from backend.forkthebill.errors import ErrorCode, InvalidStateError


@dataclass(frozen=True)
class Breakdown:
    items_subtotal: Decimal
    tax_share: Decimal
    service_charge_share: Decimal
    discount_share: Decimal
    total_owed: Decimal
    items_claimed: tuple[str, ...]


@dataclass(frozen=True)
class SplitResult:
    subtotal: Decimal
    total_amount: Decimal
    unclaimed_subtotal: Decimal
    breakdowns: dict[str, Breakdown]


def compute_split(
        items: Sequence[Item],
        participants: Iterable[Participant],
        tax: Decimal,
        service_charge: Decimal,
        discount: Decimal,
) -> SplitResult:
    """
    Pure split computation. Returns a Breakdown for every participant id.

    Raises InvalidStateError(UNKNOWN_CLAIMANT) if an item is claimed by an id
    that is not among participants.
    """
    participant_ids = [p.id for p in participants]
    known = set(participant_ids)

    items_subtotal: dict[str, Decimal] = {pid: ZERO for pid in participant_ids}
    items_claimed: dict[str, list[str]] = {pid: [] for pid in participant_ids}
    subtotal = ZERO
    unclaimed = ZERO

    for item in items:
        subtotal += item.price
        shares = item.per_claimant_share()
        if not shares:
            unclaimed += item.price
            continue
        for pid, share in shares.items():
            if pid not in known:
                raise InvalidStateError(
                    ErrorCode.UNKNOWN_CLAIMANT,
                    f"Item {item.id} is claimed by unknown participant {pid}.",
                    field="claimedBy",
                )
            items_subtotal[pid] += share
            items_claimed[pid].append(item.id)

    # The unclaimed bucket goes last so that, on a tie, leftover cents are
    # attributed to a participant before being left unattributed.
    weights = [items_subtotal[pid] for pid in participant_ids] + [unclaimed]

    tax_shares = allocate_proportionally(tax, weights)
    service_shares = allocate_proportionally(service_charge, weights)
    discount_shares = allocate_proportionally(discount, weights)

    breakdowns = {}
    for i, pid in enumerate(participant_ids):
        own = items_subtotal[pid]
        breakdowns[pid] = Breakdown(
            items_subtotal=own,
            tax_share=tax_shares[i],
            service_charge_share=service_shares[i],
            discount_share=discount_shares[i],
            total_owed=own + tax_shares[i] + service_shares[i] - discount_shares[i],
            items_claimed=tuple(items_claimed[pid]),
        )

    return SplitResult(
        subtotal=subtotal,
        total_amount=subtotal + tax + service_charge - discount,
        unclaimed_subtotal=unclaimed,
        breakdowns=breakdowns,
    )


def percentage_of(participant: Participant, expense: Expense) -> Decimal:
    """items_subtotal / subtotal, or 0 when the subtotal is 0."""
    subtotal = expense.subtotal
    if subtotal == 0:
        return Decimal(0)
    return participant.items_subtotal / subtotal


def apply_split(expense: Expense) -> Expense:
    """Returns expense with every participant's derived fields recomputed."""
    result = compute_split(
        expense.items,
        expense.participants,
        expense.tax,
        expense.service_charge,
        expense.discount,
    )
    participants = tuple(
        replace(
            p,
            items_subtotal=result.breakdowns[p.id].items_subtotal,
            tax_share=result.breakdowns[p.id].tax_share,
            service_charge_share=result.breakdowns[p.id].service_charge_share,
            discount_share=result.breakdowns[p.id].discount_share,
            total_owed=result.breakdowns[p.id].total_owed,
            items_claimed=result.breakdowns[p.id].items_claimed,
        )
        for p in expense.participants
    )
    return replace(expense, participants=participants)
