"""
Ledger Service — façade over store, variance calculator and rollup engine.

Every write operation is one atomic unit of work:

    validate input → begin (db.session) → store reads/writes → rollups → commit

and on any failure the session is rolled back, so a failed or cancelled
operation leaves no persisted side effect.

Rules:
  - commit / rollback / retry live in helpers.transaction.run_write.
  - The session is handed explicitly to store and rollup functions.
  - Domain errors are never retried. Reads are never retried.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from budget_ledger.core.exceptions import (
    InvalidPriceError,
    InvalidQuantityError,
    ValidationError,
)
from budget_ledger.models import db
from budget_ledger.models.ledger import ActualEntry, LineItem
from budget_ledger.services import ledger_store as store
from budget_ledger.services import rollup
from budget_ledger.services.helpers.transaction import run_write
from budget_ledger.services.money import (
    MAX_PRICE,
    MAX_QUANTITY,
    ZERO,
    format_amount,
    line_total,
    to_decimal,
    to_price,
    to_quantity,
)
from budget_ledger.services.variance import (
    ActualBatch,
    LineItemTerms,
    batch_variance_amount,
    batch_variance_percentage,
    compute_item_variance,
)

logger = logging.getLogger(__name__)

DEFAULT_ITEM_QUANTITY = 1


# ── Input normalisation ──────────────────────────────────────────────────────


def _positive(value, field: str, error_cls, normalise, ceiling):
    """Normalise ``value`` and require 0 < value <= ``ceiling``, else raise ``error_cls``."""
    try:
        result = normalise(value)
    except ValueError:
        raise error_cls(f"{field} must be a number", details={field: repr(value)})
    if result <= ZERO:
        raise error_cls(f"{field} must be greater than 0", details={field: str(value)})
    if result > ceiling:
        raise error_cls(f"{field} must not exceed {ceiling}", details={field: str(value)})
    return result


def _quantity(value, field="quantity"):
    return _positive(value, field, InvalidQuantityError, to_quantity, MAX_QUANTITY)


def _price(value, field="unit_price"):
    return _positive(value, field, InvalidPriceError, to_price, MAX_PRICE)


def _text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _required_text(data: dict, field: str) -> str:
    value = _text(data.get(field))
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return value


def _timestamp(value):
    """Accept a datetime or ISO-8601 string; None means now (UTC)."""
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(
            "recorded_at must be an ISO-8601 timestamp",
            details={"recorded_at": str(value)},
        )


def _line_item_fields(session, data: dict, *, partial: bool = False) -> dict:
    """Validate line item input into store field names.

    ``partial=True`` validates only the keys present (update semantics).
    """
    fields = {}

    if not partial or "description" in data:
        fields["description"] = _required_text(data, "description")
    if not partial or "unit" in data:
        fields["unit"] = _required_text(data, "unit")

    if not partial or "category_id" in data:
        category_id = data.get("category_id")
        if category_id is None:
            raise ValidationError("category_id is required", details={"category_id": "required"})
        fields["category_id"] = store.get_category(session, category_id).id

    if "quantity" in data:
        fields["estimated_quantity"] = _quantity(data["quantity"])
    elif not partial:
        fields["estimated_quantity"] = to_quantity(DEFAULT_ITEM_QUANTITY)

    if not partial or "unit_price" in data:
        fields["estimated_unit_price"] = _price(data.get("unit_price"))

    if "notes" in data:
        fields["notes"] = _text(data["notes"])
    return fields


# ── Line items ───────────────────────────────────────────────────────────────


def create_line_item(estimate_id: int, data: dict) -> dict:
    """Create a line item under an estimate and roll the estimate and site up.

    Args:
        estimate_id: Owning estimate.
        data: description, category_id, unit, unit_price, quantity (default 1), notes.

    Returns:
        Serialized LineItem dict.

    Raises:
        EstimateNotFoundError, CategoryNotFoundError, InvalidQuantityError,
        InvalidPriceError, ValidationError.
    """
    def work(session):
        store.get_estimate(session, estimate_id)
        fields = _line_item_fields(session, data)
        fields["estimate_id"] = estimate_id
        item = store.create_line_item(session, fields)
        rollup.rollup_after_item_change(session, estimate_id)
        return item.to_dict()

    return run_write("create_line_item", work, estimate_id=estimate_id)


def bulk_create_line_items(estimate_id: int, items: list[dict]) -> list[dict]:
    """Create several line items in one transaction: all of them or none."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", details={"items": "required"})

    def work(session):
        store.get_estimate(session, estimate_id)
        created = []
        for data in items:
            fields = _line_item_fields(session, data)
            fields["estimate_id"] = estimate_id
            created.append(store.create_line_item(session, fields))
        rollup.rollup_after_item_change(session, estimate_id)
        return [item.to_dict() for item in created]

    return run_write("bulk_create_line_items", work, estimate_id=estimate_id)


def update_line_item(item_id: int, data: dict) -> dict:
    """Update description/unit/category/quantity/unit_price/notes of an item.

    Recomputes the item total, refreshes stored batch variance against the
    new unit price and rolls the estimate and site up.
    """
    def work(session):
        item = store.get_line_item(session, item_id, lock=True)
        fields = _line_item_fields(session, data, partial=True)
        if not fields:
            raise ValidationError("No valid fields to update")
        store.update_line_item(session, item_id, fields)
        rollup.rollup_after_actual_change(session, item)
        return item.to_dict()

    return run_write("update_line_item", work, item_id=item_id)


def delete_line_item(item_id: int, *, cascade: bool = False) -> dict:
    """Delete a line item.

    With ``cascade=False`` an item that still has actual entries is refused
    with HasDependentActualsError and nothing changes. With ``cascade=True``
    the entries go first, then the item, in the same transaction.

    Returns:
        {item_id, estimate_id, deleted_actuals, estimated_total_removed, estimate_total}
    """
    if not isinstance(cascade, bool):
        raise TypeError("cascade must be a bool")

    def work(session):
        item = store.get_line_item(session, item_id, lock=True)
        estimate_id = item.estimate_id
        removed_total = to_decimal(item.estimated_total)
        removed = store.delete_line_item(session, item_id, cascade=cascade)
        if removed:
            logger.info(
                "Cascade delete removed %d actual entries", removed,
                extra={"operation": "delete_line_item", "item_id": item_id},
            )
        estimate = rollup.rollup_after_item_change(session, estimate_id)
        return {
            "item_id": item_id,
            "estimate_id": estimate_id,
            "deleted_actuals": removed,
            "estimated_total_removed": format_amount(removed_total),
            "estimate_total": format_amount(estimate.estimated_total),
        }

    return run_write("delete_line_item", work, item_id=item_id)


# ── Actual entries ───────────────────────────────────────────────────────────


def record_actual(
    item_id: int,
    unit_price,
    quantity=None,
    recorded_at=None,
    notes: str | None = None,
    supplier: str | None = None,
    recorded_by: str | None = None,
) -> dict:
    """Record one purchase batch against a line item.

    When ``quantity`` is omitted the item's estimated_quantity is used and
    the entry is flagged ``quantity_defaulted``.

    Raises:
        ItemNotFoundError, InvalidPriceError, InvalidQuantityError.
    """
    price = _price(unit_price)
    explicit_quantity = None if quantity is None else _quantity(quantity)
    when = _timestamp(recorded_at)

    def work(session):
        item = store.get_line_item(session, item_id, lock=True)
        resolved = explicit_quantity
        if resolved is None:
            resolved = to_quantity(item.estimated_quantity)
        entry = ActualEntry(
            item_id=item_id,
            actual_quantity=resolved,
            actual_unit_price=price,
            actual_total=line_total(resolved, price),
            quantity_defaulted=explicit_quantity is None,
            variance_amount=batch_variance_amount(item.estimated_unit_price, price, resolved),
            variance_percentage=batch_variance_percentage(item.estimated_unit_price, price),
            recorded_at=when,
            recorded_by=_text(recorded_by),
            supplier=_text(supplier),
            notes=_text(notes),
        )
        store.insert_actual_entry(session, entry)
        rollup.rollup_after_actual_change(session, item)
        return entry.to_dict()

    return run_write("record_actual", work, item_id=item_id)


def update_actual(actual_id: int, data: dict) -> dict:
    """Update price/quantity/recorded_at/notes/supplier of one batch.

    ``{"quantity": None}`` re-defaults the batch to the item's estimated
    quantity.
    """
    def work(session):
        entry = store.get_actual_entry(session, actual_id)
        item = store.get_line_item(session, entry.item_id, lock=True)

        fields = {}
        if "unit_price" in data:
            fields["actual_unit_price"] = _price(data["unit_price"])
        if "quantity" in data:
            if data["quantity"] is None:
                fields["actual_quantity"] = to_quantity(item.estimated_quantity)
                fields["quantity_defaulted"] = True
            else:
                fields["actual_quantity"] = _quantity(data["quantity"])
                fields["quantity_defaulted"] = False
        if "recorded_at" in data:
            fields["recorded_at"] = _timestamp(data["recorded_at"])
        for key in ("notes", "supplier"):
            if key in data:
                fields[key] = _text(data[key])
        if not fields:
            raise ValidationError("No valid fields to update")

        store.update_actual_entry(session, actual_id, fields)
        rollup.rollup_after_actual_change(session, item)
        return entry.to_dict()

    return run_write("update_actual", work, actual_id=actual_id)


def delete_actual(actual_id: int) -> dict:
    """Delete one batch; returns the deleted entry as it was."""
    def work(session):
        entry = store.get_actual_entry(session, actual_id)
        item = store.get_line_item(session, entry.item_id, lock=True)
        snapshot = entry.to_dict()
        store.delete_actual_entry(session, actual_id)
        rollup.rollup_after_actual_change(session, item)
        return snapshot

    return run_write("delete_actual", work, actual_id=actual_id)


# ── Reads ────────────────────────────────────────────────────────────────────


def get_item_variance(item_id: int) -> dict:
    """Per-batch and cumulative variance for one item (read-only)."""
    session = db.session
    item = store.get_line_item(session, item_id)
    batches = [ActualBatch.from_row(entry) for entry in store.list_actual_entries(session, item_id)]
    result = compute_item_variance(LineItemTerms.from_row(item), batches)
    data = result.to_dict()
    data.update({
        "estimate_id": item.estimate_id,
        "description": item.description,
        "unit": item.unit,
        "category_name": item.category.name if item.category else None,
    })
    return data


def get_estimate_rollup(estimate_id: int) -> dict:
    session = db.session
    estimate = store.get_estimate(session, estimate_id)
    item_count = session.execute(
        select(func.count(LineItem.id)).where(LineItem.estimate_id == estimate_id)
    ).scalar() or 0
    return {
        "estimate_id": estimate.id,
        "site_id": estimate.site_id,
        "status": estimate.status,
        "estimated_total": format_amount(estimate.estimated_total),
        "version": estimate.version,
        "item_count": item_count,
    }


def get_site_rollup(site_id: int) -> dict:
    site = store.get_site(db.session, site_id)
    remaining = None
    over_budget = False
    if site.budget_limit is not None:
        remaining = to_decimal(site.budget_limit) - to_decimal(site.purchased_total)
        over_budget = remaining < ZERO
    return {
        "site_id": site.id,
        "estimated_total": format_amount(site.estimated_total),
        "purchased_total": format_amount(site.purchased_total),
        "budget_limit": format_amount(site.budget_limit),
        "remaining_budget": format_amount(remaining),
        "over_budget": over_budget,
    }
