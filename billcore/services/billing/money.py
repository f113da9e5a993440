"""Fixed-precision money arithmetic.

Amounts are ``Decimal`` throughout. Storage and comparison happen at two
decimal places, rounded half away from zero; usage quantities and
intermediate rates keep four.
"""
from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from billcore.errors import InvalidAmount

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")
ZERO = Decimal("0.00")


def to_decimal(value: object) -> Decimal:
    """Coerce ``value`` to a finite ``Decimal`` or raise ``InvalidAmount``.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")`` rather
    than its binary expansion.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount(f"Not a monetary value: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Not a monetary value: {value!r}") from exc
    else:
        raise InvalidAmount(f"Unsupported monetary type: {type(value).__name__}")
    if not result.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    return result


def _quantize(value: object, exp: Decimal) -> Decimal:
    try:
        return to_decimal(value).quantize(exp, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidAmount(f"Amount out of range: {value!r}") from exc


def round2(value: object) -> Decimal:
    return _quantize(value, TWO_PLACES)


def round4(value: object) -> Decimal:
    return _quantize(value, FOUR_PLACES)


def sum_money(values: Iterable[object]) -> Decimal:
    """Sum raw values, then round the total once."""
    total = Decimal("0")
    for value in values:
        total += to_decimal(value)
    return round2(total)


def to_minor_units(value: object) -> int:
    return int(round2(value) * 100)


def from_minor_units(minor: int) -> Decimal:
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise InvalidAmount(f"Minor units must be an integer, got {minor!r}")
    return (Decimal(minor) / 100).quantize(TWO_PLACES)
