"""
Money / quantity arithmetic — pure Decimal helpers, no state.

Scales:
    quantity     3 dp   (input normalised, ROUND_HALF_UP)
    unit price   2 dp   (input normalised, ROUND_HALF_UP)
    totals       exact  (qty × price is at most 5 dp, sums stay exact)

Totals are never rounded inside the ledger so that additive identities
(Σ batch variance == cumulative variance, Σ items == estimate total) hold to
the last digit. Rounding to cents happens only in the ``format_*`` helpers
used by ``to_dict`` serialisers.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

ZERO = Decimal("0")
HUNDRED = Decimal("100")

QUANTITY_EXP = Decimal("0.001")
PRICE_EXP = Decimal("0.01")
AMOUNT_EXP = Decimal("0.01")
PERCENT_EXP = Decimal("0.01")
AVERAGE_PRICE_EXP = Decimal("0.0001")

# Largest values the quantity Numeric(12, 3), unit price Numeric(12, 2) and
# budget limit Numeric(15, 2) columns can hold.
MAX_QUANTITY = Decimal("999999999.999")
MAX_PRICE = Decimal("9999999999.99")
MAX_BUDGET = Decimal("9999999999999.99")


def to_decimal(value) -> Decimal:
    """Coerce int / str / float / Decimal to Decimal.

    Floats go through ``str()`` so 12.1 becomes Decimal("12.1"), not its
    binary expansion. None, bools, NaN and infinities are rejected.

    Raises:
        ValueError: value is not a finite number.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def _normalise(value, exp: Decimal) -> Decimal:
    result = to_decimal(value)
    try:
        return result.quantize(exp, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        # quantize needs more digits than the context precision allows
        raise ValueError(f"out of range: {value!r}") from exc


def to_quantity(value) -> Decimal:
    return _normalise(value, QUANTITY_EXP)


def to_price(value) -> Decimal:
    return _normalise(value, PRICE_EXP)


def line_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    """quantity × unit_price, unrounded."""
    return to_decimal(quantity) * to_decimal(unit_price)


def safe_divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator, or 0 when the denominator is 0."""
    if denominator == ZERO:
        return ZERO
    return numerator / denominator


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """part / whole × 100, 0 when whole is 0 (no undefined signal)."""
    return safe_divide(part, whole) * HUNDRED


# ── Serialisation ────────────────────────────────────────────────────────────


def _fmt(value, exp: Decimal) -> str | None:
    if value is None:
        return None
    return str(to_decimal(value).quantize(exp, rounding=ROUND_HALF_UP))


def format_amount(value) -> str | None:
    return _fmt(value, AMOUNT_EXP)


def format_price(value) -> str | None:
    return _fmt(value, PRICE_EXP)


def format_quantity(value) -> str | None:
    return _fmt(value, QUANTITY_EXP)


def format_percentage(value) -> str | None:
    return _fmt(value, PERCENT_EXP)


def format_average_price(value) -> str | None:
    return _fmt(value, AVERAGE_PRICE_EXP)
