"""
Ledger Store — persistence functions for line items and actual entries.

Rules:
  - Every function takes the SQLAlchemy session as its first argument; that
    session is the transaction handle owned by the single in-flight service
    operation. Nothing here reads ``db.session`` directly.
  - Nothing here commits or rolls back. The service layer owns the boundary.
  - ``lock=True`` issues SELECT ... FOR UPDATE and re-reads the row
    (populate_existing) so the caller sees the latest committed state.
  - Missing rows raise the typed NotFound errors from core.exceptions.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from budget_ledger.core.exceptions import (
    ActualNotFoundError,
    CategoryNotFoundError,
    EstimateNotFoundError,
    HasDependentActualsError,
    ItemNotFoundError,
    SiteNotFoundError,
)
from budget_ledger.models.ledger import ActualEntry, Category, Estimate, LineItem, Site

logger = logging.getLogger(__name__)

LINE_ITEM_FIELDS = (
    "category_id", "description", "unit",
    "estimated_quantity", "estimated_unit_price", "notes",
)
ACTUAL_ENTRY_FIELDS = (
    "actual_quantity", "actual_unit_price", "quantity_defaulted",
    "recorded_at", "recorded_by", "supplier", "notes",
)


def _get(session, model, pk, not_found, *, lock=False):
    stmt = select(model).where(model.id == pk)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    obj = session.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise not_found(pk)
    return obj


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_site(session, site_id: int, *, lock: bool = False) -> Site:
    return _get(session, Site, site_id, SiteNotFoundError, lock=lock)


def get_estimate(session, estimate_id: int, *, lock: bool = False) -> Estimate:
    return _get(session, Estimate, estimate_id, EstimateNotFoundError, lock=lock)


def get_category(session, category_id: int) -> Category:
    return _get(session, Category, category_id, CategoryNotFoundError)


def get_line_item(session, item_id: int, *, lock: bool = False) -> LineItem:
    return _get(session, LineItem, item_id, ItemNotFoundError, lock=lock)


def get_actual_entry(session, entry_id: int, *, lock: bool = False) -> ActualEntry:
    return _get(session, ActualEntry, entry_id, ActualNotFoundError, lock=lock)


def list_actual_entries(session, item_id: int) -> list[ActualEntry]:
    """All entries of an item in batch order (sequence ascending)."""
    return list(
        session.execute(
            select(ActualEntry)
            .where(ActualEntry.item_id == item_id)
            .order_by(ActualEntry.sequence.asc())
        ).scalars()
    )


def count_actual_entries(session, item_id: int) -> int:
    return session.execute(
        select(func.count(ActualEntry.id)).where(ActualEntry.item_id == item_id)
    ).scalar() or 0


def next_sequence(session, item_id: int) -> int:
    current = session.execute(
        select(func.max(ActualEntry.sequence)).where(ActualEntry.item_id == item_id)
    ).scalar()
    return (current or 0) + 1


# ── Actual entries ───────────────────────────────────────────────────────────


def insert_actual_entry(session, entry: ActualEntry) -> int:
    """Insert ``entry`` with the next sequence number for its item.

    The item row is locked first, so two writers on the same item serialise
    on the sequence read. The (item_id, sequence) unique constraint is the
    backstop where row locks are unavailable.
    """
    get_line_item(session, entry.item_id, lock=True)
    entry.sequence = next_sequence(session, entry.item_id)
    session.add(entry)
    session.flush()
    logger.debug(
        "Inserted actual entry id=%s item_id=%s sequence=%s",
        entry.id, entry.item_id, entry.sequence,
    )
    return entry.id


def update_actual_entry(session, entry_id: int, fields: dict) -> ActualEntry:
    """Apply ``fields`` (subset of ACTUAL_ENTRY_FIELDS) to an entry."""
    entry = get_actual_entry(session, entry_id, lock=True)
    for key in ACTUAL_ENTRY_FIELDS:
        if key in fields:
            setattr(entry, key, fields[key])
    session.flush()
    return entry


def delete_actual_entry(session, entry_id: int) -> ActualEntry:
    """Delete one entry and return the (now detached-on-commit) row."""
    entry = get_actual_entry(session, entry_id, lock=True)
    session.delete(entry)
    session.flush()
    return entry


def delete_all_actual_entries(session, item_id: int) -> int:
    entries = list_actual_entries(session, item_id)
    for entry in entries:
        session.delete(entry)
    session.flush()
    return len(entries)


# ── Line items ───────────────────────────────────────────────────────────────


def create_line_item(session, fields: dict) -> LineItem:
    """Insert a line item; ``fields`` must include estimate_id."""
    item = LineItem(estimate_id=fields["estimate_id"])
    for key in LINE_ITEM_FIELDS:
        if key in fields:
            setattr(item, key, fields[key])
    session.add(item)
    session.flush()
    return item


def update_line_item(session, item_id: int, fields: dict) -> LineItem:
    item = get_line_item(session, item_id, lock=True)
    for key in LINE_ITEM_FIELDS:
        if key in fields:
            setattr(item, key, fields[key])
    session.flush()
    return item


def delete_line_item(session, item_id: int, *, cascade: bool = False) -> int:
    """Delete a line item; returns how many actual entries went with it.

    Raises:
        ItemNotFoundError: no such item.
        HasDependentActualsError: entries exist and cascade is False.
    """
    item = get_line_item(session, item_id, lock=True)
    count = count_actual_entries(session, item_id)
    if count and not cascade:
        raise HasDependentActualsError(item_id, count)

    removed = delete_all_actual_entries(session, item_id) if count else 0
    session.delete(item)
    session.flush()
    return removed
