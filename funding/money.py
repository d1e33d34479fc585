"""
Decimal helpers for monetary amounts.

Amounts are stored and exchanged as base-10 strings. All arithmetic goes
through MONEY_CONTEXT, which traps inexact results instead of rounding.
"""

import re
from decimal import (
    Context,
    Decimal,
    DivisionByZero,
    Inexact,
    InvalidOperation,
    Overflow,
    ROUND_HALF_EVEN,
)
from typing import Union

from .errors import InvalidAmountError

# 18 fractional digits covers the smallest unit of common chain tokens (wei).
MAX_SCALE = 18
# Keeps every stored amount inside the String(100) amount columns.
MAX_INTEGER_DIGITS = 60
ZERO = Decimal("0")

# Plain base-10 only: no sign, exponent, underscores or non-ASCII digits.
AMOUNT_PATTERN = re.compile(r"[0-9]+(\.[0-9]+)?")

# One digit of headroom so the sum of two in-range amounts is always exact.
MONEY_CONTEXT = Context(
    prec=MAX_INTEGER_DIGITS + MAX_SCALE + 1,
    rounding=ROUND_HALF_EVEN,
    traps=[InvalidOperation, Inexact, Overflow, DivisionByZero],
)

AmountLike = Union[str, int, Decimal]


def parse_amount(value: AmountLike, *, allow_zero: bool = False) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmountError("Amount must be a decimal string, not a float")
    if isinstance(value, int):
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise InvalidAmountError("Amount is required")
        if value.startswith("-"):
            raise InvalidAmountError("Amount must be greater than zero")
        if not AMOUNT_PATTERN.fullmatch(value):
            raise InvalidAmountError(f"Invalid amount: {value!r}")
        amount = Decimal(value)
    elif isinstance(value, Decimal):
        amount = value
    else:
        raise InvalidAmountError(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmountError("Amount must be greater than zero")
    if -amount.as_tuple().exponent > MAX_SCALE:
        raise InvalidAmountError(f"Amount supports at most {MAX_SCALE} decimal places")
    _check_magnitude(amount)
    return amount


def _check_magnitude(amount: Decimal) -> None:
    if amount >= 1 and amount.adjusted() + 1 > MAX_INTEGER_DIGITS:
        raise InvalidAmountError(f"Amount supports at most {MAX_INTEGER_DIGITS} integer digits")


def format_amount(amount: Decimal) -> str:
    if amount == 0:
        return "0"
    return format(amount, "f")


def add_amounts(left: Decimal, right: Decimal) -> Decimal:
    try:
        result = MONEY_CONTEXT.add(left, right)
    except (Inexact, Overflow):
        raise InvalidAmountError("Amount exceeds supported precision")
    _check_magnitude(result)
    return result


def subtract_clamped(left: Decimal, right: Decimal) -> Decimal:
    """Subtract ``right`` from ``left``, flooring the result at zero."""
    try:
        result = MONEY_CONTEXT.subtract(left, right)
    except (Inexact, Overflow):
        raise InvalidAmountError("Amount exceeds supported precision")
    return result if result > 0 else ZERO


def is_goal_met(current: AmountLike, goal: AmountLike) -> bool:
    return parse_amount(current, allow_zero=True) >= parse_amount(goal, allow_zero=True)
