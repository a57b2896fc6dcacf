"""Fixed-point money helpers shared by the cancellation and refund evaluators.

Amounts are carried as ``Decimal`` at the API surface and as integer minor
units (cents) inside calculations, so fee computation never touches binary
floating point.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MINOR_UNITS_PER_MAJOR = 100
_CENT = Decimal("0.01")
_ONE = Decimal("1")


def _as_decimal(value: Decimal | int | str, *, field: str) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"{field} must be a Decimal, int or str, got {type(value).__name__}")
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"{field} is not a valid amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"{field} must be finite")
    return result


def as_amount(value: Decimal | int | str) -> Decimal:
    """Validate an amount without rounding it."""
    return _as_decimal(value, field="amount")


def quantize_money(value: Decimal | int | str) -> Decimal:
    """Normalize an amount to two decimal places, rounding half-up."""
    return _as_decimal(value, field="amount").quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(value: Decimal | int | str) -> int:
    """Convert a major-unit amount into integer minor units."""
    return int(quantize_money(value) * MINOR_UNITS_PER_MAJOR)


def from_minor_units(minor: int) -> Decimal:
    return (Decimal(minor) / MINOR_UNITS_PER_MAJOR).quantize(_CENT)


def amount_for(base: Decimal | int | str, percentage: Decimal | int | str) -> Decimal:
    """Return ``percentage`` percent of ``base``, rounded half-up to the cent.

    Raises:
        ValueError: If ``percentage`` is outside [0, 100] or ``base`` is negative.
    """
    pct = _as_decimal(percentage, field="percentage")
    if not 0 <= pct <= 100:
        raise ValueError(f"percentage must be between 0 and 100, got {pct}")

    base_minor = to_minor_units(base)
    if base_minor < 0:
        raise ValueError("base amount must be non-negative")

    fee_minor = (Decimal(base_minor) * pct / 100).quantize(_ONE, rounding=ROUND_HALF_UP)
    return from_minor_units(int(fee_minor))
