"""
Rollup Engine — keeps denormalised totals equal to the sum of their children.

Policy: recompute-by-full-sum on every mutation, inside the caller's
transaction, after the row-level change has been flushed. Never an
incremental patch, so a drifted total heals on the next write.

Lock order (always the same, so writers cannot deadlock each other):
    line item  →  estimate  →  site

Levels:
    rollup_line_item   purchased_quantity / purchased_total / actual_count,
                       plus stored batch variance refreshed against the
                       item's current estimated unit price
    rollup_estimate    estimated_total = Σ line_items.estimated_total
    rollup_site        estimated_total = Σ estimates.estimated_total
                       purchased_total = Σ actual_entries.actual_total under the site

Estimate.version is the mapper version counter; if another writer committed
in between and the row lock was not honoured by the backend, the flush
raises StaleDataError and the service retries the whole operation.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from budget_ledger.models.ledger import ActualEntry, Estimate, LineItem, Site
from budget_ledger.services import ledger_store as store
from budget_ledger.services.money import ZERO, to_decimal
from budget_ledger.services.variance import batch_variance_amount, batch_variance_percentage

logger = logging.getLogger(__name__)


def _sum(session, stmt):
    value = session.execute(stmt).scalar()
    return to_decimal(value) if value is not None else ZERO


# ── Line item level ──────────────────────────────────────────────────────────


def rollup_line_item(session, item: LineItem) -> LineItem:
    """Recompute the item's purchase rollups and refresh batch variance."""
    entries = store.list_actual_entries(session, item.id)
    for entry in entries:
        entry.variance_amount = batch_variance_amount(
            item.estimated_unit_price, entry.actual_unit_price, entry.actual_quantity,
        )
        entry.variance_percentage = batch_variance_percentage(
            item.estimated_unit_price, entry.actual_unit_price,
        )
    session.flush()

    item.purchased_quantity = _sum(
        session,
        select(func.sum(ActualEntry.actual_quantity)).where(ActualEntry.item_id == item.id),
    )
    item.purchased_total = _sum(
        session,
        select(func.sum(ActualEntry.actual_total)).where(ActualEntry.item_id == item.id),
    )
    item.actual_count = len(entries)
    session.flush()
    return item


# ── Estimate level ───────────────────────────────────────────────────────────


def rollup_estimate(session, estimate_id: int) -> Estimate:
    estimate = store.get_estimate(session, estimate_id, lock=True)
    estimate.estimated_total = _sum(
        session,
        select(func.sum(LineItem.estimated_total)).where(LineItem.estimate_id == estimate_id),
    )
    session.flush()
    logger.debug(
        "Estimate rollup estimate_id=%s estimated_total=%s version=%s",
        estimate_id, estimate.estimated_total, estimate.version,
    )
    return estimate


# ── Site level ───────────────────────────────────────────────────────────────


def rollup_site(session, site_id: int) -> Site:
    site = store.get_site(session, site_id, lock=True)
    site.estimated_total = _sum(
        session,
        select(func.sum(Estimate.estimated_total)).where(Estimate.site_id == site_id),
    )
    site.purchased_total = _sum(
        session,
        select(func.sum(ActualEntry.actual_total))
        .join(LineItem, ActualEntry.item_id == LineItem.id)
        .join(Estimate, LineItem.estimate_id == Estimate.id)
        .where(Estimate.site_id == site_id),
    )
    session.flush()
    logger.debug(
        "Site rollup site_id=%s estimated_total=%s purchased_total=%s",
        site_id, site.estimated_total, site.purchased_total,
    )
    return site


# ── Chains ───────────────────────────────────────────────────────────────────


def rollup_after_item_change(session, estimate_id: int) -> Estimate:
    """Estimate then site, after a line item insert/update/delete."""
    estimate = rollup_estimate(session, estimate_id)
    rollup_site(session, estimate.site_id)
    return estimate


def rollup_after_actual_change(session, item: LineItem) -> Estimate:
    """Item, estimate and site, after an actual entry insert/update/delete."""
    rollup_line_item(session, item)
    return rollup_after_item_change(session, item.estimate_id)


def recompute_all(session) -> dict:
    """Repair pass: recompute every line item, estimate and site rollup."""
    items = session.execute(select(LineItem).order_by(LineItem.id)).scalars().all()
    for item in items:
        rollup_line_item(session, item)

    estimate_ids = session.execute(select(Estimate.id).order_by(Estimate.id)).scalars().all()
    for estimate_id in estimate_ids:
        rollup_estimate(session, estimate_id)

    site_ids = session.execute(select(Site.id).order_by(Site.id)).scalars().all()
    for site_id in site_ids:
        rollup_site(session, site_id)

    return {
        "line_items": len(items),
        "estimates": len(estimate_ids),
        "sites": len(site_ids),
    }
