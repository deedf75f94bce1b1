"""
Budget Variance Ledger — domain models.

Models:
    - Category:     cost category lookup (Material, Labor, Masonry, ...)
    - Site:         construction site; carries site-level rollups
    - Estimate:     versioned estimate for a site; carries estimated_total rollup
    - LineItem:     estimated quantity × unit price; carries purchase rollups
    - ActualEntry:  one purchase batch against a line item (the ledger row)

Architecture:
    Site ──1:N──▶ Estimate ──1:N──▶ LineItem ──1:N──▶ ActualEntry
    LineItem ──N:1──▶ Category

Derived state:
    LineItem.estimated_total   = estimated_quantity × estimated_unit_price   (mapper hook)
    ActualEntry.actual_total   = actual_quantity × actual_unit_price         (mapper hook)
    LineItem.purchased_*       = Σ its ActualEntries                          (rollup engine)
    Estimate.estimated_total   = Σ its LineItems.estimated_total              (rollup engine)
    Site.estimated_total       = Σ its Estimates.estimated_total              (rollup engine)
    Site.purchased_total       = Σ ActualEntry.actual_total under the site    (rollup engine)

Lifecycle states:
    Estimate:  draft → submitted → approved | rejected;  any non-archived → archived
"""

from datetime import datetime, timezone

from sqlalchemy import event

from budget_ledger.models import db
from budget_ledger.services.money import (
    format_amount,
    format_percentage,
    format_price,
    format_quantity,
    line_total,
)


# ── Column types ─────────────────────────────────────────────────────────────

QUANTITY = db.Numeric(12, 3)
UNIT_PRICE = db.Numeric(12, 2)
# A max quantity times a max price, plus headroom for estimate and site sums
TOTAL = db.Numeric(28, 5)
# A max price against a one-cent estimate is a 10^14 percent variance
PERCENT = db.Numeric(20, 4)


def _utcnow():
    return datetime.now(timezone.utc)


# ── Constants ────────────────────────────────────────────────────────────────

ESTIMATE_STATUSES = {"draft", "submitted", "approved", "rejected", "archived"}

ESTIMATE_TRANSITIONS = {
    "draft":     ["submitted", "archived"],
    "submitted": ["approved", "rejected", "archived"],
    "approved":  ["archived"],
    "rejected":  ["archived"],
    "archived":  [],
}

DEFAULT_CATEGORIES = [
    ("Material", "Basic construction materials"),
    ("Labor", "Worker payments and contractor fees"),
    ("Masonry", "Brick work, concrete, foundations"),
    ("Steel Works", "Reinforcement, structural steel"),
    ("Plumbing", "Pipes, fixtures, installation"),
    ("Carpentry", "Wood work, formwork, finishing"),
    ("Electrical Works", "Wiring, fixtures, installations"),
    ("Air Conditioning Works", "HVAC systems"),
    ("Utilities", "Water, electricity connections"),
    ("Glass Glazing", "Windows, glass installations"),
    ("Metal Works", "Gates, railings, metal fixtures"),
    ("POP/Aesthetics Works", "Finishing, decorative elements"),
]


def validate_estimate_transition(old_status, new_status):
    """Return True if Estimate status transition is valid."""
    return new_status in ESTIMATE_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Category
# ═════════════════════════════════════════════════════════════════════════════


class Category(db.Model):
    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text, default="")
    sort_order = db.Column(db.Integer, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<Category {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Site
# ═════════════════════════════════════════════════════════════════════════════


class Site(db.Model):
    """
    Construction site. budget_limit is optional; the two totals are rollups
    written only by the rollup engine.
    """

    __tablename__ = "sites"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    location = db.Column(db.String(255), default="")
    budget_limit = db.Column(db.Numeric(15, 2), nullable=True)

    estimated_total = db.Column(
        TOTAL, nullable=False, default=0,
        comment="Rollup: Σ estimates.estimated_total",
    )
    purchased_total = db.Column(
        TOTAL, nullable=False, default=0,
        comment="Rollup: Σ actual_entries.actual_total under this site",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    estimates = db.relationship(
        "Estimate", backref="site", lazy="dynamic", order_by="Estimate.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "budget_limit": format_amount(self.budget_limit),
            "estimated_total": format_amount(self.estimated_total),
            "purchased_total": format_amount(self.purchased_total),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Site {self.id}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Estimate
# ═════════════════════════════════════════════════════════════════════════════


class Estimate(db.Model):
    """
    Estimate for a site. ``version`` is the mapper version counter: every
    UPDATE is issued as ``... WHERE version = <read version>`` and bumps it,
    so a rollup written from a stale read fails with StaleDataError.
    """

    __tablename__ = "estimates"

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(
        db.Integer, db.ForeignKey("sites.id"), nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | submitted | approved | rejected | archived",
    )
    estimated_total = db.Column(
        TOTAL, nullable=False, default=0,
        comment="Rollup: Σ line_items.estimated_total",
    )
    version = db.Column(db.Integer, nullable=False)
    created_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('draft','submitted','approved','rejected','archived')",
            name="ck_estimate_status",
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    line_items = db.relationship(
        "LineItem", backref="estimate", lazy="dynamic", order_by="LineItem.id",
    )

    def to_dict(self, include_items=False):
        result = {
            "id": self.id,
            "site_id": self.site_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "estimated_total": format_amount(self.estimated_total),
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "item_count": self.line_items.count(),
        }
        if include_items:
            result["items"] = [i.to_dict() for i in self.line_items]
        return result

    def __repr__(self):
        return f"<Estimate {self.id}: {self.title} [{self.status}] v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. LineItem
# ═════════════════════════════════════════════════════════════════════════════


class LineItem(db.Model):
    """
    Estimated line: quantity × unit price under an estimate.
    estimated_total is derived in the flush hook below; purchased_* columns
    are rollups over the item's ActualEntries.
    """

    __tablename__ = "line_items"

    id = db.Column(db.Integer, primary_key=True)
    estimate_id = db.Column(
        db.Integer, db.ForeignKey("estimates.id"), nullable=False, index=True,
    )
    category_id = db.Column(
        db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True,
    )
    description = db.Column(db.Text, nullable=False)
    unit = db.Column(db.String(30), nullable=False, comment="Unit code: bag, m3, kg, hr ...")
    estimated_quantity = db.Column(QUANTITY, nullable=False)
    estimated_unit_price = db.Column(UNIT_PRICE, nullable=False)
    estimated_total = db.Column(TOTAL, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    purchased_quantity = db.Column(
        db.Numeric(15, 3), nullable=False, default=0,
        comment="Rollup: Σ actual_entries.actual_quantity",
    )
    purchased_total = db.Column(
        TOTAL, nullable=False, default=0,
        comment="Rollup: Σ actual_entries.actual_total",
    )
    actual_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint("estimated_quantity > 0", name="ck_line_item_quantity_positive"),
        db.CheckConstraint("estimated_unit_price > 0", name="ck_line_item_price_positive"),
    )

    category = db.relationship("Category")
    actuals = db.relationship(
        "ActualEntry", backref="line_item", lazy="dynamic",
        order_by="ActualEntry.sequence",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "estimate_id": self.estimate_id,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "description": self.description,
            "unit": self.unit,
            "estimated_quantity": format_quantity(self.estimated_quantity),
            "estimated_unit_price": format_price(self.estimated_unit_price),
            "estimated_total": format_amount(self.estimated_total),
            "purchased_quantity": format_quantity(self.purchased_quantity),
            "purchased_total": format_amount(self.purchased_total),
            "actual_count": self.actual_count,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<LineItem {self.id}: {self.description[:30]!r}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. ActualEntry
# ═════════════════════════════════════════════════════════════════════════════


class ActualEntry(db.Model):
    """
    One purchase batch. ``sequence`` orders batches within an item and is
    assigned by the ledger store under a row lock on the item; batch numbers
    in reports come from it, never from recorded_at.
    """

    __tablename__ = "actual_entries"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("line_items.id"), nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)

    actual_quantity = db.Column(QUANTITY, nullable=False)
    actual_unit_price = db.Column(UNIT_PRICE, nullable=False)
    actual_total = db.Column(TOTAL, nullable=False, default=0)
    quantity_defaulted = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when actual_quantity was taken from the item's estimated_quantity",
    )

    variance_amount = db.Column(
        TOTAL, nullable=False, default=0,
        comment="(actual_unit_price - estimated_unit_price) × actual_quantity",
    )
    variance_percentage = db.Column(PERCENT, nullable=False, default=0)

    recorded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    recorded_by = db.Column(db.String(100), nullable=True)
    supplier = db.Column(db.String(200), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("item_id", "sequence", name="uq_actual_entries_item_sequence"),
        db.CheckConstraint("actual_quantity > 0", name="ck_actual_quantity_positive"),
        db.CheckConstraint("actual_unit_price > 0", name="ck_actual_price_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "sequence": self.sequence,
            "actual_quantity": format_quantity(self.actual_quantity),
            "actual_unit_price": format_price(self.actual_unit_price),
            "actual_total": format_amount(self.actual_total),
            "quantity_defaulted": self.quantity_defaulted,
            "variance_amount": format_amount(self.variance_amount),
            "variance_percentage": format_percentage(self.variance_percentage),
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "recorded_by": self.recorded_by,
            "supplier": self.supplier,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<ActualEntry {self.id}: item={self.item_id} #{self.sequence}>"


# ── Derived totals ───────────────────────────────────────────────────────────


@event.listens_for(LineItem, "before_insert")
@event.listens_for(LineItem, "before_update")
def _derive_estimated_total(mapper, connection, target):
    target.estimated_total = line_total(target.estimated_quantity, target.estimated_unit_price)


@event.listens_for(ActualEntry, "before_insert")
@event.listens_for(ActualEntry, "before_update")
def _derive_actual_total(mapper, connection, target):
    target.actual_total = line_total(target.actual_quantity, target.actual_unit_price)
