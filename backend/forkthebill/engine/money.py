"""
engine/money.py — Exact currency arithmetic.

All amounts are Decimal, quantized to the currency's minor unit (cents).
Float never appears in or around money calculations.

divide_evenly and allocate_proportionally both guarantee that their results
sum exactly to the input amount. Neither relies on summation happening to
land on the original value.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Sequence

from backend.forkthebill.errors import AppError, ErrorCode, InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, field: str | None = None) -> Decimal:
    """
    Parses a monetary input into a non-negative Decimal with two places.

    Accepts Decimal, int and numeric strings. Floats are converted through
    their repr so that 12.5 becomes Decimal("12.5"), not its binary expansion.
    Input with more than 2 decimal places is rejected, never rounded.
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(f"{value!r} is not a valid amount.", field=field)

    try:
        amount = Decimal(repr(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"{value!r} is not a valid amount.", field=field)

    if not amount.is_finite():
        raise InvalidAmountError(f"{value!r} is not a valid amount.", field=field)
    if amount < 0:
        raise InvalidAmountError(
            f"Amount must not be negative, got {amount}.",
            field=field,
        )
    if amount.as_tuple().exponent < -2:
        raise InvalidAmountError(
            "Amount must have at most 2 decimal places.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT_PRECISION,
        )
    return amount.quantize(CENT)


def round_to_cent(value: Decimal) -> Decimal:
    """Rounds half-up to the nearest cent."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def add(a: Decimal, b: Decimal) -> Decimal:
    return round_to_cent(a + b)


def subtract(a: Decimal, b: Decimal) -> Decimal:
    return round_to_cent(a - b)


def multiply_by_ratio(amount: Decimal, ratio: Decimal) -> Decimal:
    """Returns amount * ratio rounded half-up to the cent."""
    return round_to_cent(amount * Decimal(ratio))


def divide_evenly(amount: Decimal, n: int) -> list[Decimal]:
    """
    Splits amount into n shares that sum exactly to amount.

    Every share gets amount / n rounded down to the cent. The leftover cents
    (always fewer than n) go one each to the earliest-indexed shares.

        divide_evenly(Decimal("10.00"), 3) → [3.34, 3.33, 3.33]

    Raises InvalidAmountError for a negative amount or n <= 0.
    """
    if n <= 0:
        raise InvalidAmountError(
            f"Cannot divide an amount into {n} shares.",
            field="quantity",
        )
    amount = Decimal(amount)
    if amount < 0:
        raise InvalidAmountError(f"Amount must not be negative, got {amount}.")
    if amount != amount.quantize(CENT):
        raise InvalidAmountError(
            "Amount must have at most 2 decimal places.",
            code=ErrorCode.INVALID_AMOUNT_PRECISION,
        )

    base = (amount / Decimal(n)).quantize(CENT, rounding=ROUND_DOWN)
    leftover_cents = int((amount - base * n) / CENT)

    shares = [base + CENT if i < leftover_cents else base for i in range(n)]

    # Must always hold; a failure here is a programming error.
    if sum(shares, ZERO) != amount:
        raise AppError(
            ErrorCode.INTERNAL_ERROR,
            f"Even split produced {shares} for amount {amount}. This is a bug.",
            500,
        )
    return shares


def allocate_proportionally(
        amount: Decimal,
        weights: Sequence[Decimal],
) -> list[Decimal]:
    """
    Splits amount across len(weights) shares proportionally to weights using
    the largest-remainder rule.

    Each share is first rounded down to the cent. The leftover cents go, one
    each, to the shares with the largest discarded fractions; ties go to the
    earliest index. When every weight is zero, every share is zero and the
    amount is left unallocated.
    """
    amount = Decimal(amount)
    if amount < 0:
        raise InvalidAmountError(f"Amount must not be negative, got {amount}.")
    if any(w < 0 for w in weights):
        raise InvalidAmountError("Allocation weights must not be negative.")

    total_weight = sum(weights, Decimal(0))
    if total_weight == 0:
        return [ZERO for _ in weights]

    exact = [amount * w / total_weight for w in weights]
    shares = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]

    leftover_cents = int((amount - sum(shares, ZERO)) / CENT)
    by_remainder = sorted(
        range(len(weights)),
        key=lambda i: (-(exact[i] - shares[i]), i),
    )
    for i in by_remainder[:leftover_cents]:
        shares[i] += CENT

    return shares
