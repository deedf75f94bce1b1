"""
Variance reporting — read-only views over committed ledger state.

    estimate_variance_summary   per-item cumulative variance for one estimate
    variance_alerts             batches whose |variance %| ≥ threshold
    budget_alerts               sites whose purchased_total exceeds budget_limit
    category_variance           cumulative variance grouped by category
    variance_trends             daily batch variance with running totals
    top_variances               batches with the largest variance amount
    estimate_statistics         estimate counts by status and value totals
    site_statistics             site counts, budgets and rollup totals
    actual_statistics           batch counts, spend and variance split

Nothing here writes or retries. Per-item figures come from the variance
calculator; category figures come from the committed item rollups
(purchased_quantity / purchased_total), which the rollup engine keeps equal
to the sum of each item's entries.
"""

import logging
from collections import defaultdict
from datetime import datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy import case, func, or_, select

from budget_ledger.core.exceptions import ValidationError
from budget_ledger.models import db
from budget_ledger.models.ledger import (
    ESTIMATE_STATUSES,
    ActualEntry,
    Category,
    Estimate,
    LineItem,
    Site,
)
from budget_ledger.services import ledger_store as store
from budget_ledger.services.money import (
    ZERO,
    format_amount,
    format_percentage,
    format_price,
    format_quantity,
    line_total,
    percentage,
    to_decimal,
)
from budget_ledger.services.variance import (
    OVER_BUDGET,
    UNDER_BUDGET,
    ActualBatch,
    LineItemTerms,
    batch_variance_amount,
    classify,
    compute_item_variance,
)

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 20
DEFAULT_TREND_DAYS = 30
DEFAULT_TOP_LIMIT = 10
TOP_VARIANCE_KINDS = ("over", "under", "both")
RECENT_LIMIT = 5
RECENT_ACTUALS_LIMIT = 10


def _positive_int(value, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: repr(value)})
    if number < 1:
        raise ValidationError(f"{field} must be at least 1", details={field: str(value)})
    return number


def _or_zero(value):
    return to_decimal(value) if value is not None else ZERO


def _iso(value):
    return value.isoformat() if value else None


def estimate_variance_summary(estimate_id: int) -> dict:
    """Cumulative variance of every line item of an estimate, plus totals."""
    session = db.session
    estimate = store.get_estimate(session, estimate_id)

    items = session.execute(
        select(LineItem)
        .join(Category, LineItem.category_id == Category.id)
        .where(LineItem.estimate_id == estimate_id)
        .order_by(Category.sort_order, LineItem.id)
    ).scalars().all()

    entries_by_item = defaultdict(list)
    entries = session.execute(
        select(ActualEntry)
        .join(LineItem, ActualEntry.item_id == LineItem.id)
        .where(LineItem.estimate_id == estimate_id)
        .order_by(ActualEntry.item_id, ActualEntry.sequence)
    ).scalars()
    for entry in entries:
        entries_by_item[entry.item_id].append(ActualBatch.from_row(entry))

    rows = []
    estimated_total = total_actual = variance_amount = expected_cost = ZERO
    counts = {OVER_BUDGET: 0, UNDER_BUDGET: 0, "with_actuals": 0}
    for item in items:
        result = compute_item_variance(
            LineItemTerms.from_row(item), entries_by_item.get(item.id, [])
        )
        estimated_total += result.estimated_total
        total_actual += result.total_actual
        variance_amount += result.cumulative_variance_amount
        expected_cost += result.estimated_unit_price * result.total_quantity_purchased
        if result.has_actuals:
            counts["with_actuals"] += 1
        if result.variance_status in counts:
            counts[result.variance_status] += 1

        row = result.to_dict()
        row.pop("batches")
        row.update({
            "description": item.description,
            "unit": item.unit,
            "category_name": item.category.name,
        })
        rows.append(row)

    return {
        "estimate_id": estimate.id,
        "site_id": estimate.site_id,
        "title": estimate.title,
        "status": estimate.status,
        "items": rows,
        "totals": {
            "estimated_total": format_amount(estimated_total),
            "total_actual": format_amount(total_actual),
            "variance_amount": format_amount(variance_amount),
            "variance_percentage": format_percentage(percentage(variance_amount, expected_cost)),
            "item_count": len(rows),
            "items_with_actuals": counts["with_actuals"],
            "over_budget_count": counts[OVER_BUDGET],
            "under_budget_count": counts[UNDER_BUDGET],
        },
    }


def _batch_joined():
    return (
        select(ActualEntry, LineItem, Estimate, Site)
        .join(LineItem, ActualEntry.item_id == LineItem.id)
        .join(Estimate, LineItem.estimate_id == Estimate.id)
        .join(Site, Estimate.site_id == Site.id)
    )


def _batch_row(entry, item, estimate, site) -> dict:
    amount = to_decimal(entry.variance_amount)
    return {
        "actual_id": entry.id,
        "sequence": entry.sequence,
        "item_id": item.id,
        "description": item.description,
        "category_name": item.category.name if item.category else None,
        "estimate_id": estimate.id,
        "estimate_title": estimate.title,
        "site_id": site.id,
        "site_name": site.name,
        "estimated_unit_price": format_price(item.estimated_unit_price),
        "actual_unit_price": format_price(entry.actual_unit_price),
        "actual_quantity": format_quantity(entry.actual_quantity),
        "actual_total": format_amount(entry.actual_total),
        "variance_amount": format_amount(amount),
        "variance_percentage": format_percentage(entry.variance_percentage),
        "variance_status": classify(amount),
        "recorded_at": _iso(entry.recorded_at),
    }


def variance_alerts(threshold=None) -> list[dict]:
    """Committed batches with |variance_percentage| ≥ threshold, largest first.

    ``threshold`` defaults to VARIANCE_ALERT_THRESHOLD (percent).
    """
    if threshold is None:
        threshold = current_app.config.get("VARIANCE_ALERT_THRESHOLD", DEFAULT_ALERT_THRESHOLD)
    try:
        limit = to_decimal(threshold)
    except ValueError:
        raise ValidationError("threshold must be a number", details={"threshold": repr(threshold)})
    if limit < ZERO:
        raise ValidationError("threshold cannot be negative", details={"threshold": str(threshold)})

    rows = db.session.execute(
        _batch_joined()
        .where(or_(
            ActualEntry.variance_percentage >= limit,
            ActualEntry.variance_percentage <= -limit,
        ))
    ).all()

    alerts = []
    for entry, item, estimate, site in rows:
        alert = _batch_row(entry, item, estimate, site)
        alert["_magnitude"] = abs(to_decimal(entry.variance_percentage))
        alerts.append(alert)
    alerts.sort(key=lambda a: (-a["_magnitude"], a["actual_id"]))
    for alert in alerts:
        del alert["_magnitude"]
    return alerts


def budget_alerts() -> list[dict]:
    """Sites over their budget limit, ordered by overrun percentage."""
    sites = db.session.execute(
        select(Site)
        .where(Site.budget_limit.isnot(None))
        .where(Site.purchased_total > Site.budget_limit)
    ).scalars()

    alerts = []
    for site in sites:
        limit = to_decimal(site.budget_limit)
        purchased = to_decimal(site.purchased_total)
        over = purchased - limit
        alerts.append({
            "site_id": site.id,
            "site_name": site.name,
            "budget_limit": format_amount(limit),
            "purchased_total": format_amount(purchased),
            "over_budget_amount": format_amount(over),
            "over_budget_percentage": format_percentage(percentage(over, limit)),
            "_pct": percentage(over, limit),
        })
    if alerts:
        logger.info("%d site(s) over budget", len(alerts))
    alerts.sort(key=lambda a: (-a["_pct"], a["site_id"]))
    for alert in alerts:
        del alert["_pct"]
    return alerts


def category_variance(estimate_id: int | None = None, site_id: int | None = None) -> list[dict]:
    """Cumulative variance per category, optionally scoped to an estimate or site."""
    session = db.session
    stmt = (
        select(LineItem, Category)
        .join(Category, LineItem.category_id == Category.id)
        .join(Estimate, LineItem.estimate_id == Estimate.id)
    )
    if estimate_id is not None:
        store.get_estimate(session, estimate_id)
        stmt = stmt.where(LineItem.estimate_id == estimate_id)
    if site_id is not None:
        store.get_site(session, site_id)
        stmt = stmt.where(Estimate.site_id == site_id)

    groups = {}
    for item, category in session.execute(stmt.order_by(Category.sort_order, Category.id)).all():
        group = groups.setdefault(category.id, {
            "category_id": category.id,
            "category_name": category.name,
            "item_count": 0,
            "items_with_actuals": 0,
            "over_budget_count": 0,
            "estimated_total": ZERO,
            "total_actual": ZERO,
            "variance_amount": ZERO,
            "expected_cost": ZERO,
        })
        price = to_decimal(item.estimated_unit_price)
        purchased_total = to_decimal(item.purchased_total)
        expected = price * to_decimal(item.purchased_quantity)
        amount = purchased_total - expected

        group["item_count"] += 1
        group["estimated_total"] += to_decimal(item.estimated_total)
        group["total_actual"] += purchased_total
        group["variance_amount"] += amount
        group["expected_cost"] += expected
        if item.actual_count:
            group["items_with_actuals"] += 1
            if amount > ZERO:
                group["over_budget_count"] += 1

    result = []
    for group in groups.values():
        pct = percentage(group["variance_amount"], group.pop("expected_cost"))
        group["variance_percentage"] = pct
        result.append(group)
    result.sort(key=lambda g: (-abs(g["variance_percentage"]), g["category_id"]))

    for group in result:
        group["variance_status"] = classify(
            group["variance_amount"], has_actual=group["items_with_actuals"] > 0,
        )
        for key in ("estimated_total", "total_actual", "variance_amount"):
            group[key] = format_amount(group[key])
        group["variance_percentage"] = format_percentage(group["variance_percentage"])
    return result


# ── Trends & rankings ────────────────────────────────────────────────────────


def _utc_date(value):
    # SQLite hands back naive datetimes; they were written as UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def variance_trends(site_id: int | None = None, days=DEFAULT_TREND_DAYS) -> dict:
    """Batch variance per recorded day over the last ``days`` days.

    The window opens at midnight UTC ``days`` days ago. Days without batches
    are left out. Each day carries running totals from the start of the
    window, so the last row's cumulative figures cover the whole window.

    Returns:
        {site_id, days, since, daily: [{recorded_date, actuals_recorded,
        actual_cost, expected_cost, variance_amount, variance_percentage,
        over_budget_count, under_budget_count, cumulative_*}]}
    """
    days = _positive_int(days, "days")
    session = db.session
    since = datetime.combine(
        datetime.now(timezone.utc).date() - timedelta(days=days), time.min, tzinfo=timezone.utc,
    )

    stmt = (
        select(ActualEntry, LineItem)
        .join(LineItem, ActualEntry.item_id == LineItem.id)
        .where(ActualEntry.recorded_at >= since)
        .order_by(ActualEntry.recorded_at, ActualEntry.id)
    )
    if site_id is not None:
        store.get_site(session, site_id)
        stmt = (
            stmt.join(Estimate, LineItem.estimate_id == Estimate.id)
            .where(Estimate.site_id == site_id)
        )

    daily = {}
    for entry, item in session.execute(stmt).all():
        day = daily.setdefault(_utc_date(entry.recorded_at), {
            "actuals_recorded": 0,
            "actual_cost": ZERO,
            "expected_cost": ZERO,
            "variance_amount": ZERO,
            "over_budget_count": 0,
            "under_budget_count": 0,
        })
        actual = line_total(entry.actual_quantity, entry.actual_unit_price)
        amount = batch_variance_amount(
            item.estimated_unit_price, entry.actual_unit_price, entry.actual_quantity,
        )
        day["actuals_recorded"] += 1
        day["actual_cost"] += actual
        day["expected_cost"] += actual - amount
        day["variance_amount"] += amount
        status = classify(amount)
        if status in (OVER_BUDGET, UNDER_BUDGET):
            day[f"{status}_count"] += 1

    rows = []
    running = {"actual_cost": ZERO, "expected_cost": ZERO, "variance_amount": ZERO}
    for recorded_date in sorted(daily):
        day = daily[recorded_date]
        for key in running:
            running[key] += day[key]
        rows.append({
            "recorded_date": recorded_date.isoformat(),
            "actuals_recorded": day["actuals_recorded"],
            "actual_cost": format_amount(day["actual_cost"]),
            "expected_cost": format_amount(day["expected_cost"]),
            "variance_amount": format_amount(day["variance_amount"]),
            "variance_percentage": format_percentage(
                percentage(day["variance_amount"], day["expected_cost"])
            ),
            "over_budget_count": day["over_budget_count"],
            "under_budget_count": day["under_budget_count"],
            "cumulative_actual_cost": format_amount(running["actual_cost"]),
            "cumulative_expected_cost": format_amount(running["expected_cost"]),
            "cumulative_variance_amount": format_amount(running["variance_amount"]),
            "cumulative_variance_percentage": format_percentage(
                percentage(running["variance_amount"], running["expected_cost"])
            ),
        })

    return {"site_id": site_id, "days": days, "since": since.isoformat(), "daily": rows}


def top_variances(limit=DEFAULT_TOP_LIMIT, kind="both") -> list[dict]:
    """Batches with the largest |variance_amount|, largest first.

    ``kind`` narrows to "over" (positive variance) or "under" (negative);
    "both" ranks every batch by magnitude.
    """
    limit = _positive_int(limit, "limit")
    if kind not in TOP_VARIANCE_KINDS:
        raise ValidationError(
            f"kind must be one of {', '.join(TOP_VARIANCE_KINDS)}", details={"kind": repr(kind)},
        )

    stmt = _batch_joined()
    if kind == "over":
        stmt = stmt.where(ActualEntry.variance_amount > 0)
    elif kind == "under":
        stmt = stmt.where(ActualEntry.variance_amount < 0)
    stmt = stmt.order_by(func.abs(ActualEntry.variance_amount).desc(), ActualEntry.id).limit(limit)

    return [
        _batch_row(entry, item, estimate, site)
        for entry, item, estimate, site in db.session.execute(stmt).all()
    ]


# ── Statistics ───────────────────────────────────────────────────────────────


def estimate_statistics(site_id: int | None = None) -> dict:
    """Estimate counts per status, value totals and the latest estimates."""
    session = db.session
    scope = []
    if site_id is not None:
        store.get_site(session, site_id)
        scope.append(Estimate.site_id == site_id)

    count, total, average = session.execute(
        select(
            func.count(Estimate.id),
            func.sum(Estimate.estimated_total),
            func.avg(Estimate.estimated_total),
        ).where(*scope)
    ).one()

    by_status = {status: 0 for status in sorted(ESTIMATE_STATUSES)}
    for status, status_count in session.execute(
        select(Estimate.status, func.count(Estimate.id)).where(*scope).group_by(Estimate.status)
    ).all():
        by_status[status] = status_count

    recent = session.execute(
        select(Estimate, Site.name)
        .join(Site, Estimate.site_id == Site.id)
        .where(*scope)
        .order_by(Estimate.created_at.desc(), Estimate.id.desc())
        .limit(RECENT_LIMIT)
    ).all()

    return {
        "site_id": site_id,
        "total_estimates": count,
        "by_status": by_status,
        "total_estimated_value": format_amount(_or_zero(total)),
        "average_estimate_value": format_amount(_or_zero(average)),
        "recent_estimates": [
            {
                "estimate_id": estimate.id,
                "title": estimate.title,
                "status": estimate.status,
                "site_name": site_name,
                "created_at": _iso(estimate.created_at),
            }
            for estimate, site_name in recent
        ],
    }


def site_statistics() -> dict:
    """Site counts, budget totals, rollup totals and the latest sites."""
    session = db.session
    count, budgeted, total_budget, average_budget, estimated, purchased = session.execute(
        select(
            func.count(Site.id),
            func.count(Site.budget_limit),
            func.sum(Site.budget_limit),
            func.avg(Site.budget_limit),
            func.sum(Site.estimated_total),
            func.sum(Site.purchased_total),
        )
    ).one()
    over_budget = session.execute(
        select(func.count(Site.id))
        .where(Site.budget_limit.isnot(None))
        .where(Site.purchased_total > Site.budget_limit)
    ).scalar()

    recent = session.execute(
        select(Site).order_by(Site.created_at.desc(), Site.id.desc()).limit(RECENT_LIMIT)
    ).scalars()

    return {
        "total_sites": count,
        "budgeted_sites": budgeted,
        "over_budget_sites": over_budget,
        "total_budget": format_amount(_or_zero(total_budget)),
        "average_budget": format_amount(_or_zero(average_budget)),
        "total_estimated": format_amount(_or_zero(estimated)),
        "total_purchased": format_amount(_or_zero(purchased)),
        "recent_sites": [
            {
                "site_id": site.id,
                "name": site.name,
                "location": site.location,
                "created_at": _iso(site.created_at),
            }
            for site in recent
        ],
    }


def actual_statistics(site_id: int | None = None) -> dict:
    """Batch counts, spend, variance split and the latest batches."""
    session = db.session
    stmt = select(
        func.count(ActualEntry.id),
        func.count(func.distinct(ActualEntry.item_id)),
        func.sum(ActualEntry.actual_total),
        func.sum(ActualEntry.variance_amount),
        func.avg(ActualEntry.variance_percentage),
        func.sum(case((ActualEntry.variance_amount > 0, 1), else_=0)),
        func.sum(case((ActualEntry.variance_amount < 0, 1), else_=0)),
        func.sum(case((ActualEntry.variance_amount == 0, 1), else_=0)),
    )
    recent_stmt = _batch_joined()
    if site_id is not None:
        store.get_site(session, site_id)
        stmt = (
            stmt.join(LineItem, ActualEntry.item_id == LineItem.id)
            .join(Estimate, LineItem.estimate_id == Estimate.id)
            .where(Estimate.site_id == site_id)
        )
        recent_stmt = recent_stmt.where(Site.id == site_id)

    count, items, total, variance, average_pct, over, under, on = session.execute(stmt).one()
    recent = session.execute(
        recent_stmt.order_by(ActualEntry.recorded_at.desc(), ActualEntry.id.desc())
        .limit(RECENT_ACTUALS_LIMIT)
    ).all()

    return {
        "site_id": site_id,
        "total_actuals": count,
        "items_with_actuals": items,
        "total_actual_cost": format_amount(_or_zero(total)),
        "total_variance": format_amount(_or_zero(variance)),
        "average_variance_percentage": format_percentage(_or_zero(average_pct)),
        "over_budget_count": over or 0,
        "under_budget_count": under or 0,
        "on_budget_count": on or 0,
        "recent_actuals": [_batch_row(*row) for row in recent],
    }
