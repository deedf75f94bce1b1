"""Estimate / site service — the collaborators that own sites, estimates and
categories. Line items and actual entries go through ledger_service.

Transaction policy: every public write runs through run_write (commit on
success, rollback on any failure). Rollup columns are never set here
directly; they are recomputed by the rollup engine.

Provides:
- Site create / budget update
- Estimate create, status transition, duplicate, delete
- Category listing, creation and default seeding
- Full rollup repair pass
"""

import logging

from sqlalchemy import func, select

from budget_ledger.core.exceptions import (
    ConflictError,
    HasDependentsError,
    InvalidTransitionError,
    ValidationError,
)
from budget_ledger.models import db
from budget_ledger.models.ledger import (
    DEFAULT_CATEGORIES,
    ESTIMATE_STATUSES,
    Category,
    Estimate,
    LineItem,
    Site,
    validate_estimate_transition,
)
from budget_ledger.services import ledger_store as store
from budget_ledger.services import rollup
from budget_ledger.services.helpers.transaction import run_write
from budget_ledger.services.money import MAX_BUDGET, ZERO, to_decimal

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (Copy)"


def _required(data: dict, field: str, limit: int) -> str:
    value = str(data.get(field) or "").strip()
    if not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if len(value) > limit:
        raise ValidationError(
            f"{field} must be at most {limit} characters", details={field: "too long"},
        )
    return value


def _budget_limit(value):
    """None clears the limit; otherwise a non-negative amount."""
    if value is None or value == "":
        return None
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError("budget_limit must be a number", details={"budget_limit": repr(value)})
    if amount < ZERO:
        raise ValidationError("budget_limit cannot be negative", details={"budget_limit": str(value)})
    if amount > MAX_BUDGET:
        raise ValidationError(
            f"budget_limit must not exceed {MAX_BUDGET}", details={"budget_limit": str(value)}
        )
    return amount


# ── Sites ────────────────────────────────────────────────────────────────────


def create_site(data: dict) -> dict:
    name = _required(data, "name", 200)
    budget_limit = _budget_limit(data.get("budget_limit"))

    def work(session):
        site = Site(
            name=name,
            location=str(data.get("location") or "").strip(),
            budget_limit=budget_limit,
        )
        session.add(site)
        session.flush()
        return site.to_dict()

    return run_write("create_site", work)


def update_site_budget(site_id: int, budget_limit) -> dict:
    """Set or clear (None) a site's budget limit."""
    amount = _budget_limit(budget_limit)

    def work(session):
        site = store.get_site(session, site_id, lock=True)
        site.budget_limit = amount
        session.flush()
        return site.to_dict()

    return run_write("update_site_budget", work, site_id=site_id)


# ── Estimates ────────────────────────────────────────────────────────────────


def create_estimate(site_id: int, data: dict) -> dict:
    """New draft estimate with zero totals."""
    title = _required(data, "title", 200)

    def work(session):
        store.get_site(session, site_id)
        estimate = Estimate(
            site_id=site_id,
            title=title,
            description=str(data.get("description") or "").strip(),
            status="draft",
            estimated_total=ZERO,
            created_by=data.get("created_by"),
        )
        session.add(estimate)
        session.flush()
        return estimate.to_dict()

    return run_write("create_estimate", work, site_id=site_id)


def transition_estimate(estimate_id: int, new_status: str) -> dict:
    """Move an estimate along ESTIMATE_TRANSITIONS.

    Raises:
        EstimateNotFoundError: no such estimate.
        InvalidTransitionError: edge not allowed (including unknown statuses).
    """
    def work(session):
        estimate = store.get_estimate(session, estimate_id, lock=True)
        old = estimate.status
        if new_status not in ESTIMATE_STATUSES or not validate_estimate_transition(old, new_status):
            raise InvalidTransitionError(old, new_status)
        estimate.status = new_status
        session.flush()
        logger.info(
            "Estimate %s → %s", old, new_status,
            extra={"operation": "transition_estimate", "estimate_id": estimate_id},
        )
        return estimate.to_dict()

    return run_write("transition_estimate", work, estimate_id=estimate_id)


def duplicate_estimate(estimate_id: int, title: str | None = None, created_by: str | None = None) -> dict:
    """Copy an estimate and its line items (not its actuals) into a new draft."""
    def work(session):
        source = store.get_estimate(session, estimate_id)
        copy = Estimate(
            site_id=source.site_id,
            title=(title or "").strip() or f"{source.title}{COPY_SUFFIX}",
            description=source.description,
            status="draft",
            estimated_total=ZERO,
            created_by=created_by or source.created_by,
        )
        session.add(copy)
        session.flush()

        items = session.execute(
            select(LineItem).where(LineItem.estimate_id == estimate_id).order_by(LineItem.id)
        ).scalars().all()
        for item in items:
            store.create_line_item(session, {
                "estimate_id": copy.id,
                "category_id": item.category_id,
                "description": item.description,
                "unit": item.unit,
                "estimated_quantity": item.estimated_quantity,
                "estimated_unit_price": item.estimated_unit_price,
                "notes": item.notes,
            })
        rollup.rollup_after_item_change(session, copy.id)
        return copy.to_dict()

    return run_write("duplicate_estimate", work, estimate_id=estimate_id)


def delete_estimate(estimate_id: int) -> dict:
    """Delete an empty estimate and re-roll its site.

    Raises:
        HasDependentsError: the estimate still has line items.
    """
    def work(session):
        estimate = store.get_estimate(session, estimate_id, lock=True)
        count = session.execute(
            select(func.count(LineItem.id)).where(LineItem.estimate_id == estimate_id)
        ).scalar() or 0
        if count:
            raise HasDependentsError("Estimate", estimate_id, "line items", count)
        site_id = estimate.site_id
        session.delete(estimate)
        session.flush()
        rollup.rollup_site(session, site_id)
        return {"estimate_id": estimate_id, "site_id": site_id}

    return run_write("delete_estimate", work, estimate_id=estimate_id)


# ── Categories ───────────────────────────────────────────────────────────────


def list_categories() -> list[dict]:
    categories = db.session.execute(
        select(Category).order_by(Category.sort_order, Category.name)
    ).scalars()
    return [c.to_dict() for c in categories]


def create_category(data: dict) -> dict:
    name = _required(data, "name", 100)

    def work(session):
        exists = session.execute(
            select(Category.id).where(func.lower(Category.name) == name.lower())
        ).first()
        if exists:
            raise ConflictError("Category", "name", name)
        category = Category(
            name=name,
            description=str(data.get("description") or ""),
            sort_order=int(data.get("sort_order") or 0),
        )
        session.add(category)
        session.flush()
        return category.to_dict()

    return run_write("create_category", work)


def seed_default_categories() -> int:
    """Insert any missing default category; returns how many were created."""
    def work(session):
        existing = set(session.execute(select(Category.name)).scalars())
        created = 0
        for order, (name, description) in enumerate(DEFAULT_CATEGORIES, start=1):
            if name in existing:
                continue
            session.add(Category(name=name, description=description, sort_order=order))
            created += 1
        session.flush()
        return created

    return run_write("seed_default_categories", work)


# ── Repair ───────────────────────────────────────────────────────────────────


def recompute_rollups() -> dict:
    """Recompute every rollup from its children; returns per-level counts."""
    counts = run_write("recompute_rollups", rollup.recompute_all)
    logger.info("Rollups recomputed: %s", counts)
    return counts
