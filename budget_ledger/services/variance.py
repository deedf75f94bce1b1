"""
Variance Calculator — pure functions, no I/O.

Input:  a LineItemTerms snapshot of one line item plus ActualBatch snapshots
        of its entries in batch order (sequence ascending). Readers build
        them from rows with ``from_row`` so the calculator never touches
        the session.
Output: ItemVariance — one BatchVariance per batch + cumulative figures.

Formulas (P = estimated unit price, p_i / q_i = batch price / quantity):

    batch_variance_amount_i      = (p_i - P) × q_i
    batch_variance_percentage_i  = (p_i - P) / P × 100          (0 when P == 0)

    total_quantity_purchased     = Σ q_i
    total_actual                 = Σ p_i × q_i
    cumulative_variance_amount   = total_actual - P × total_quantity_purchased
    cumulative_variance_pct      = cumulative_variance_amount / (P × Σ q_i) × 100
                                   (0 when P == 0 or Σ q_i == 0)
    remaining_quantity           = max(0, estimated_quantity - Σ q_i)
    remaining_budget             = estimated_total - total_actual
    weighted_average_actual_price = total_actual / Σ q_i        (0 when Σ q_i == 0)

Totals are always re-derived from quantity × price here rather than trusted
from stored columns, so the identity Σ batch_variance_amount_i ==
cumulative_variance_amount holds exactly.

An item with no batches is the normal "not yet purchased" state: every
cumulative figure is 0, remaining_quantity = estimated_quantity,
remaining_budget = estimated_total and has_actuals is False.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from budget_ledger.services.money import (
    ZERO,
    format_amount,
    format_average_price,
    format_percentage,
    format_price,
    format_quantity,
    line_total,
    percentage,
    safe_divide,
    to_decimal,
)

OVER_BUDGET = "over_budget"
UNDER_BUDGET = "under_budget"
ON_BUDGET = "on_budget"
NO_ACTUAL = "no_actual"


@dataclass(frozen=True)
class LineItemTerms:
    """Snapshot of the estimated side of a line item."""
    estimated_quantity: Decimal
    estimated_unit_price: Decimal
    id: int | None = None

    @classmethod
    def from_row(cls, item) -> "LineItemTerms":
        return cls(
            estimated_quantity=to_decimal(item.estimated_quantity),
            estimated_unit_price=to_decimal(item.estimated_unit_price),
            id=item.id,
        )


@dataclass(frozen=True)
class ActualBatch:
    """Snapshot of one purchase batch."""
    actual_quantity: Decimal
    actual_unit_price: Decimal
    sequence: int | None = None
    id: int | None = None
    recorded_at: datetime | None = None

    @classmethod
    def from_row(cls, entry) -> "ActualBatch":
        return cls(
            actual_quantity=to_decimal(entry.actual_quantity),
            actual_unit_price=to_decimal(entry.actual_unit_price),
            sequence=entry.sequence,
            id=entry.id,
            recorded_at=entry.recorded_at,
        )


@dataclass
class BatchVariance:
    batch_number: int
    actual_id: int | None
    sequence: int | None
    actual_quantity: Decimal
    actual_unit_price: Decimal
    actual_total: Decimal
    variance_amount: Decimal
    variance_percentage: Decimal
    variance_status: str
    recorded_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "batch_number": self.batch_number,
            "actual_id": self.actual_id,
            "sequence": self.sequence,
            "actual_quantity": format_quantity(self.actual_quantity),
            "actual_unit_price": format_price(self.actual_unit_price),
            "actual_total": format_amount(self.actual_total),
            "variance_amount": format_amount(self.variance_amount),
            "variance_percentage": format_percentage(self.variance_percentage),
            "variance_status": self.variance_status,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
        }


@dataclass
class ItemVariance:
    item_id: int | None
    estimated_quantity: Decimal
    estimated_unit_price: Decimal
    estimated_total: Decimal
    total_quantity_purchased: Decimal
    total_actual: Decimal
    cumulative_variance_amount: Decimal
    cumulative_variance_pct: Decimal
    remaining_quantity: Decimal
    remaining_budget: Decimal
    weighted_average_actual_price: Decimal
    variance_status: str
    batches: list[BatchVariance] = field(default_factory=list)

    @property
    def has_actuals(self) -> bool:
        return bool(self.batches)

    @property
    def purchase_count(self) -> int:
        return len(self.batches)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "estimated_quantity": format_quantity(self.estimated_quantity),
            "estimated_unit_price": format_price(self.estimated_unit_price),
            "estimated_total": format_amount(self.estimated_total),
            "has_actuals": self.has_actuals,
            "purchase_count": self.purchase_count,
            "total_quantity_purchased": format_quantity(self.total_quantity_purchased),
            "total_actual": format_amount(self.total_actual),
            "cumulative_variance_amount": format_amount(self.cumulative_variance_amount),
            "cumulative_variance_pct": format_percentage(self.cumulative_variance_pct),
            "remaining_quantity": format_quantity(self.remaining_quantity),
            "remaining_budget": format_amount(self.remaining_budget),
            "weighted_average_actual_price": format_average_price(
                self.weighted_average_actual_price
            ),
            "variance_status": self.variance_status,
            "batches": [b.to_dict() for b in self.batches],
        }


# ── Batch level ──────────────────────────────────────────────────────────────


def batch_variance_amount(estimated_unit_price, actual_unit_price, actual_quantity) -> Decimal:
    return (to_decimal(actual_unit_price) - to_decimal(estimated_unit_price)) * to_decimal(
        actual_quantity
    )


def batch_variance_percentage(estimated_unit_price, actual_unit_price) -> Decimal:
    estimated = to_decimal(estimated_unit_price)
    if estimated <= ZERO:
        return ZERO
    return percentage(to_decimal(actual_unit_price) - estimated, estimated)


def classify(variance_amount: Decimal, has_actual: bool = True) -> str:
    if not has_actual:
        return NO_ACTUAL
    if variance_amount > ZERO:
        return OVER_BUDGET
    if variance_amount < ZERO:
        return UNDER_BUDGET
    return ON_BUDGET


def compute_batch(item: LineItemTerms, entry: ActualBatch, batch_number: int) -> BatchVariance:
    """Variance of a single batch against the item's estimated unit price."""
    quantity = to_decimal(entry.actual_quantity)
    price = to_decimal(entry.actual_unit_price)
    amount = batch_variance_amount(item.estimated_unit_price, price, quantity)
    return BatchVariance(
        batch_number=batch_number,
        actual_id=entry.id,
        sequence=entry.sequence,
        actual_quantity=quantity,
        actual_unit_price=price,
        actual_total=line_total(quantity, price),
        variance_amount=amount,
        variance_percentage=batch_variance_percentage(item.estimated_unit_price, price),
        variance_status=classify(amount),
        recorded_at=entry.recorded_at,
    )


# ── Item level ───────────────────────────────────────────────────────────────


def compute_item_variance(item: LineItemTerms, entries: list[ActualBatch]) -> ItemVariance:
    """Per-batch and cumulative variance for one line item.

    ``entries`` must already be in batch order; batch numbers are assigned
    1..n in the order given.
    """
    estimated_quantity = to_decimal(item.estimated_quantity)
    estimated_unit_price = to_decimal(item.estimated_unit_price)
    estimated_total = line_total(estimated_quantity, estimated_unit_price)

    batches = [compute_batch(item, entry, n) for n, entry in enumerate(entries, start=1)]

    total_quantity = sum((b.actual_quantity for b in batches), ZERO)
    total_actual = sum((b.actual_total for b in batches), ZERO)
    expected_cost = estimated_unit_price * total_quantity
    cumulative_amount = total_actual - expected_cost

    if estimated_unit_price > ZERO and total_quantity > ZERO:
        cumulative_pct = percentage(cumulative_amount, expected_cost)
    else:
        cumulative_pct = ZERO

    return ItemVariance(
        item_id=item.id,
        estimated_quantity=estimated_quantity,
        estimated_unit_price=estimated_unit_price,
        estimated_total=estimated_total,
        total_quantity_purchased=total_quantity,
        total_actual=total_actual,
        cumulative_variance_amount=cumulative_amount,
        cumulative_variance_pct=cumulative_pct,
        remaining_quantity=max(ZERO, estimated_quantity - total_quantity),
        remaining_budget=estimated_total - total_actual,
        weighted_average_actual_price=safe_divide(total_actual, total_quantity),
        variance_status=classify(cumulative_amount, has_actual=bool(batches)),
        batches=batches,
    )
