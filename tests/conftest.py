"""
Shared pytest fixtures for the Budget Variance Ledger test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - category: Pre-created Category row (dict)
    - site: Pre-created Site with a 5000.00 budget limit (dict)
    - estimate: Pre-created draft Estimate under ``site`` (dict)
    - line_item: 100 bag × 10.00 item under ``estimate`` (dict)
    - make_item: factory for further line items

Rows are created through the services (which commit), so a later failing
service call rolling back its own transaction never discards fixture data.
"""

import pytest

from budget_ledger import create_app
from budget_ledger.models import db as _db
from budget_ledger.services import estimate_service, ledger_service


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def category():
    return estimate_service.create_category({"name": "Material", "sort_order": 1})


@pytest.fixture()
def other_category():
    return estimate_service.create_category({"name": "Labor", "sort_order": 2})


@pytest.fixture()
def site():
    return estimate_service.create_site(
        {"name": "Riverside Block A", "location": "Plot 14", "budget_limit": "5000"}
    )


@pytest.fixture()
def estimate(site):
    return estimate_service.create_estimate(site["id"], {"title": "Foundation", "created_by": "qs"})


@pytest.fixture()
def line_item(estimate, category):
    return ledger_service.create_line_item(
        estimate["id"],
        {
            "description": "Portland cement",
            "category_id": category["id"],
            "unit": "bag",
            "quantity": "100",
            "unit_price": "10.00",
        },
    )


@pytest.fixture()
def make_item(estimate, category):
    """Factory: create a line item under ``estimate`` and return its dict."""
    def _make(quantity="1", unit_price="1.00", description="Item", estimate_id=None, category_id=None):
        return ledger_service.create_line_item(
            estimate_id or estimate["id"],
            {
                "description": description,
                "category_id": category_id or category["id"],
                "unit": "pcs",
                "quantity": quantity,
                "unit_price": unit_price,
            },
        )
    return _make
