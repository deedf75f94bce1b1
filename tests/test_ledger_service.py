"""
Ledger service — write operations end to end through the transaction
boundary, plus read views.

Fault injection patches the rollup engine to raise SQLAlchemy's
StaleDataError / OperationalError mid-operation and checks that the
operation is retried, then surfaced as a typed error with nothing persisted.
"""

import random
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from budget_ledger.core.exceptions import (
    ActualNotFoundError,
    CategoryNotFoundError,
    ConcurrentModificationError,
    EstimateNotFoundError,
    HasDependentActualsError,
    InvalidPriceError,
    InvalidQuantityError,
    ItemNotFoundError,
    SiteNotFoundError,
    UnavailableError,
    ValidationError,
)
from budget_ledger.models import db
from budget_ledger.models.ledger import ActualEntry, Estimate, LineItem
from budget_ledger.services import ledger_service as svc
from budget_ledger.services import rollup
from budget_ledger.services.variance import ActualBatch, LineItemTerms


def _estimate_total(estimate_id):
    return db.session.get(Estimate, estimate_id).estimated_total


def _sum_items(estimate_id):
    return db.session.execute(
        select(func.coalesce(func.sum(LineItem.estimated_total), 0))
        .where(LineItem.estimate_id == estimate_id)
    ).scalar()


def _entry_count():
    return db.session.execute(select(func.count(ActualEntry.id))).scalar()


# ═════════════════════════════════════════════════════════════════════════════
# Line items
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateLineItem:
    def test_create_rolls_up_estimate_and_site(self, estimate, site, line_item):
        assert line_item["estimated_total"] == "1000.00"
        assert line_item["category_name"] == "Material"
        assert svc.get_estimate_rollup(estimate["id"])["estimated_total"] == "1000.00"
        assert svc.get_site_rollup(site["id"])["estimated_total"] == "1000.00"

    def test_quantity_defaults_to_one(self, estimate, category):
        item = svc.create_line_item(estimate["id"], {
            "description": "Site survey", "category_id": category["id"],
            "unit": "lot", "unit_price": "350",
        })
        assert item["estimated_quantity"] == "1.000"
        assert item["estimated_total"] == "350.00"

    def test_unknown_estimate(self, category):
        with pytest.raises(EstimateNotFoundError):
            svc.create_line_item(404, {
                "description": "x", "category_id": category["id"], "unit": "u", "unit_price": "1",
            })

    def test_unknown_category(self, estimate):
        with pytest.raises(CategoryNotFoundError):
            svc.create_line_item(estimate["id"], {
                "description": "x", "category_id": 404, "unit": "u", "unit_price": "1",
            })

    @pytest.mark.parametrize("field,value,error", [
        ("quantity", "0", InvalidQuantityError),
        ("quantity", "-3", InvalidQuantityError),
        ("quantity", "lots", InvalidQuantityError),
        ("unit_price", "0", InvalidPriceError),
        ("unit_price", None, InvalidPriceError),
        ("unit_price", "1e30", InvalidPriceError),
        ("unit_price", "1e11", InvalidPriceError),
        ("quantity", "1e27", InvalidQuantityError),
        ("quantity", "1e10", InvalidQuantityError),
        ("description", "  ", ValidationError),
        ("unit", "", ValidationError),
        ("category_id", None, ValidationError),
    ])
    def test_invalid_input_writes_nothing(self, estimate, category, field, value, error):
        data = {
            "description": "Rebar", "category_id": category["id"], "unit": "kg",
            "quantity": "10", "unit_price": "2.00",
        }
        data[field] = value
        with pytest.raises(error):
            svc.create_line_item(estimate["id"], data)
        assert db.session.execute(select(func.count(LineItem.id))).scalar() == 0
        assert _estimate_total(estimate["id"]) == Decimal("0")


class TestBulkCreate:
    def test_all_items_created_with_one_total(self, estimate, category):
        items = svc.bulk_create_line_items(estimate["id"], [
            {"description": "A", "category_id": category["id"], "unit": "u", "quantity": "2", "unit_price": "3.00"},
            {"description": "B", "category_id": category["id"], "unit": "u", "quantity": "1", "unit_price": "4.00"},
        ])
        assert len(items) == 2
        assert _estimate_total(estimate["id"]) == Decimal("10.00")

    def test_one_bad_item_rejects_the_batch(self, estimate, category):
        with pytest.raises(InvalidPriceError):
            svc.bulk_create_line_items(estimate["id"], [
                {"description": "A", "category_id": category["id"], "unit": "u", "unit_price": "3.00"},
                {"description": "B", "category_id": category["id"], "unit": "u", "unit_price": "-1"},
            ])
        assert db.session.execute(select(func.count(LineItem.id))).scalar() == 0

    def test_empty_list(self, estimate):
        with pytest.raises(ValidationError):
            svc.bulk_create_line_items(estimate["id"], [])


class TestUpdateLineItem:
    def test_quantity_change_updates_rollups(self, estimate, line_item):
        updated = svc.update_line_item(line_item["id"], {"quantity": "120"})
        assert updated["estimated_total"] == "1200.00"
        assert _estimate_total(estimate["id"]) == Decimal("1200.00")

    def test_price_change_refreshes_stored_batch_variance(self, line_item):
        actual = svc.record_actual(line_item["id"], "12.00", quantity="10")
        assert actual["variance_amount"] == "20.00"

        svc.update_line_item(line_item["id"], {"unit_price": "12.00"})

        entry = db.session.get(ActualEntry, actual["id"])
        assert entry.variance_amount == Decimal("0")
        assert entry.variance_percentage == Decimal("0")

    def test_no_fields(self, line_item):
        with pytest.raises(ValidationError, match="No valid fields"):
            svc.update_line_item(line_item["id"], {"estimate_id": 7})

    def test_unknown_item(self):
        with pytest.raises(ItemNotFoundError):
            svc.update_line_item(404, {"quantity": "1"})


class TestDeleteLineItem:
    def test_without_actuals(self, estimate, line_item):
        result = svc.delete_line_item(line_item["id"])
        assert result["deleted_actuals"] == 0
        assert result["estimate_total"] == "0.00"
        assert _estimate_total(estimate["id"]) == Decimal("0")

    def test_refused_when_actuals_exist_and_nothing_changes(self, estimate, site, line_item):
        svc.record_actual(line_item["id"], "11.00", quantity="5")
        before = (
            _estimate_total(estimate["id"]),
            svc.get_site_rollup(site["id"]),
            _entry_count(),
        )

        with pytest.raises(HasDependentActualsError) as exc_info:
            svc.delete_line_item(line_item["id"], cascade=False)

        assert exc_info.value.count == 1
        assert db.session.get(LineItem, line_item["id"]) is not None
        assert (
            _estimate_total(estimate["id"]),
            svc.get_site_rollup(site["id"]),
            _entry_count(),
        ) == before

    def test_cascade_removes_entries_and_total_once(self, estimate, site, line_item, make_item):
        make_item(quantity="2", unit_price="5.00")
        for price in ("9.00", "10.00", "11.00"):
            svc.record_actual(line_item["id"], price, quantity="10")
        total_before = _estimate_total(estimate["id"])

        result = svc.delete_line_item(line_item["id"], cascade=True)

        assert result["deleted_actuals"] == 3
        assert result["estimated_total_removed"] == "1000.00"
        assert _entry_count() == 0
        assert _estimate_total(estimate["id"]) == total_before - Decimal("1000.00")
        rollup_view = svc.get_site_rollup(site["id"])
        assert rollup_view["estimated_total"] == "10.00"
        assert rollup_view["purchased_total"] == "0.00"

    def test_cascade_must_be_bool(self, line_item):
        with pytest.raises(TypeError):
            svc.delete_line_item(line_item["id"], cascade="true")

    def test_unknown_item(self):
        with pytest.raises(ItemNotFoundError):
            svc.delete_line_item(404)


class TestNoRollupDrift:
    def test_interleaved_item_operations(self, estimate, make_item):
        rng = random.Random(20260301)
        live = []
        for _ in range(40):
            op = rng.choice(["create", "create", "update", "delete"])
            if op == "create" or not live:
                qty = f"{rng.randint(1, 5000) / 1000}"
                price = f"{rng.randint(1, 99999) / 100}"
                live.append(make_item(quantity=qty, unit_price=price)["id"])
            elif op == "update":
                svc.update_line_item(rng.choice(live), {"quantity": f"{rng.randint(1, 900) / 7:.3f}"})
            else:
                svc.delete_line_item(live.pop(rng.randrange(len(live))))

            db.session.expire_all()
            assert _estimate_total(estimate["id"]) == _sum_items(estimate["id"])


# ═════════════════════════════════════════════════════════════════════════════
# Actual entries
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordActual:
    def test_reference_batches(self, site, line_item):
        b1 = svc.record_actual(line_item["id"], "12.00", quantity="40", supplier="Acme")
        b2 = svc.record_actual(line_item["id"], "9.00", quantity="30")

        assert (b1["sequence"], b1["actual_total"], b1["variance_amount"]) == (1, "480.00", "80.00")
        assert b1["variance_percentage"] == "20.00"
        assert b1["supplier"] == "Acme"
        assert (b2["sequence"], b2["actual_total"], b2["variance_amount"]) == (2, "270.00", "-30.00")

        item = db.session.get(LineItem, line_item["id"])
        assert item.purchased_total == Decimal("750.00")
        assert item.purchased_quantity == Decimal("70")
        assert item.actual_count == 2
        assert svc.get_site_rollup(site["id"])["purchased_total"] == "750.00"

    def test_quantity_defaults_to_estimated_quantity(self, line_item):
        actual = svc.record_actual(line_item["id"], "10.50")
        assert actual["quantity_defaulted"] is True
        assert actual["actual_quantity"] == "100.000"
        assert actual["actual_total"] == "1050.00"

    @pytest.mark.parametrize("price,quantity,error", [
        ("0", None, InvalidPriceError),
        ("-1", "5", InvalidPriceError),
        ("abc", "5", InvalidPriceError),
        ("10", "0", InvalidQuantityError),
        ("10", "-2", InvalidQuantityError),
        ("1e30", "1", InvalidPriceError),
        ("1e11", "1", InvalidPriceError),
        ("10", "1e27", InvalidQuantityError),
        ("10", "1e10", InvalidQuantityError),
    ])
    def test_invalid_input(self, line_item, price, quantity, error):
        with pytest.raises(error):
            svc.record_actual(line_item["id"], price, quantity=quantity)
        assert _entry_count() == 0

    def test_largest_storable_price_is_accepted(self, line_item):
        actual = svc.record_actual(line_item["id"], "9999999999.99", quantity="1")
        assert actual["actual_unit_price"] == "9999999999.99"

    def test_unknown_item(self):
        with pytest.raises(ItemNotFoundError):
            svc.record_actual(404, "10")

    def test_bad_timestamp(self, line_item):
        with pytest.raises(ValidationError):
            svc.record_actual(line_item["id"], "10", recorded_at="yesterday")

    def test_iso_timestamp(self, line_item):
        actual = svc.record_actual(line_item["id"], "10", recorded_at="2026-03-01T09:30:00")
        assert actual["recorded_at"].startswith("2026-03-01T09:30:00")


class TestUpdateActual:
    def test_price_change_recomputes_everything(self, site, line_item):
        actual = svc.record_actual(line_item["id"], "12.00", quantity="40")
        updated = svc.update_actual(actual["id"], {"unit_price": "11.00", "notes": "credit note"})

        assert updated["actual_total"] == "440.00"
        assert updated["variance_amount"] == "40.00"
        assert updated["notes"] == "credit note"
        assert db.session.get(LineItem, line_item["id"]).purchased_total == Decimal("440.00")
        assert svc.get_site_rollup(site["id"])["purchased_total"] == "440.00"

    def test_quantity_none_redefaults(self, line_item):
        actual = svc.record_actual(line_item["id"], "10", quantity="3")
        updated = svc.update_actual(actual["id"], {"quantity": None})
        assert updated["actual_quantity"] == "100.000"
        assert updated["quantity_defaulted"] is True

    def test_invalid_quantity(self, line_item):
        actual = svc.record_actual(line_item["id"], "10", quantity="3")
        with pytest.raises(InvalidQuantityError):
            svc.update_actual(actual["id"], {"quantity": "0"})
        assert db.session.get(ActualEntry, actual["id"]).actual_quantity == Decimal("3")

    def test_no_fields(self, line_item):
        actual = svc.record_actual(line_item["id"], "10", quantity="3")
        with pytest.raises(ValidationError):
            svc.update_actual(actual["id"], {})

    def test_unknown_actual(self):
        with pytest.raises(ActualNotFoundError):
            svc.update_actual(404, {"unit_price": "1"})


class TestDeleteActual:
    def test_delete_rolls_back_purchase_totals(self, site, line_item):
        keep = svc.record_actual(line_item["id"], "12.00", quantity="40")
        gone = svc.record_actual(line_item["id"], "9.00", quantity="30")

        deleted = svc.delete_actual(gone["id"])

        assert deleted["id"] == gone["id"]
        item = db.session.get(LineItem, line_item["id"])
        assert item.purchased_total == Decimal("480.00")
        assert item.actual_count == 1
        assert svc.get_site_rollup(site["id"])["purchased_total"] == "480.00"
        assert db.session.get(ActualEntry, keep["id"]) is not None

    def test_unknown_actual(self):
        with pytest.raises(ActualNotFoundError):
            svc.delete_actual(404)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_item_variance(self, line_item):
        svc.record_actual(line_item["id"], "12.00", quantity="40")
        svc.record_actual(line_item["id"], "9.00", quantity="30")

        result = svc.get_item_variance(line_item["id"])

        assert result["total_actual"] == "750.00"
        assert result["cumulative_variance_amount"] == "50.00"
        assert result["cumulative_variance_pct"] == "7.14"
        assert result["remaining_quantity"] == "30.000"
        assert result["remaining_budget"] == "250.00"
        assert result["weighted_average_actual_price"] == "10.7143"
        assert [b["batch_number"] for b in result["batches"]] == [1, 2]
        assert result["category_name"] == "Material"

    def test_item_variance_is_computed_from_snapshots(self, line_item):
        svc.record_actual(line_item["id"], "12.00", quantity="40")
        with patch.object(svc, "compute_item_variance", wraps=svc.compute_item_variance) as calc:
            svc.get_item_variance(line_item["id"])
        terms, batches = calc.call_args.args
        assert isinstance(terms, LineItemTerms)
        assert terms.id == line_item["id"]
        assert [type(b) for b in batches] == [ActualBatch]
        assert batches[0].sequence == 1

    def test_item_variance_without_actuals(self, line_item):
        result = svc.get_item_variance(line_item["id"])
        assert result["has_actuals"] is False
        assert result["variance_status"] == "no_actual"
        assert result["batches"] == []

    def test_estimate_rollup(self, estimate, line_item):
        result = svc.get_estimate_rollup(estimate["id"])
        assert result["item_count"] == 1
        assert result["estimated_total"] == "1000.00"
        assert result["version"] >= 1

    def test_site_rollup_remaining_budget(self, site, line_item):
        svc.record_actual(line_item["id"], "60.00", quantity="90")
        result = svc.get_site_rollup(site["id"])
        assert result["budget_limit"] == "5000.00"
        assert result["purchased_total"] == "5400.00"
        assert result["remaining_budget"] == "-400.00"
        assert result["over_budget"] is True

    @pytest.mark.parametrize("reader,error", [
        (svc.get_item_variance, ItemNotFoundError),
        (svc.get_estimate_rollup, EstimateNotFoundError),
        (svc.get_site_rollup, SiteNotFoundError),
    ])
    def test_not_found(self, reader, error):
        with pytest.raises(error):
            reader(404)


# ═════════════════════════════════════════════════════════════════════════════
# Retry / atomicity
# ═════════════════════════════════════════════════════════════════════════════


class TestRetry:
    def test_conflict_is_retried_then_succeeds(self, line_item):
        real = rollup.rollup_after_actual_change
        calls = {"n": 0}

        def flaky(session, item):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("estimates row changed underneath")
            return real(session, item)

        with patch.object(rollup, "rollup_after_actual_change", side_effect=flaky):
            actual = svc.record_actual(line_item["id"], "10", quantity="1")

        assert calls["n"] == 2
        assert actual["sequence"] == 1
        assert _entry_count() == 1

    def test_exhausted_conflicts_leave_no_trace(self, app, estimate, line_item):
        with patch.object(
            rollup, "rollup_after_actual_change", side_effect=StaleDataError("stale"),
        ) as mock_rollup:
            with pytest.raises(ConcurrentModificationError) as exc_info:
                svc.record_actual(line_item["id"], "10", quantity="1")

        assert mock_rollup.call_count == app.config["LEDGER_WRITE_RETRIES"]
        assert exc_info.value.attempts == app.config["LEDGER_WRITE_RETRIES"]
        assert _entry_count() == 0
        assert db.session.get(LineItem, line_item["id"]).actual_count == 0

    def test_store_outage_surfaces_as_unavailable(self, estimate, line_item):
        outage = OperationalError("UPDATE estimates", {}, Exception("database is locked"))
        with patch.object(rollup, "rollup_after_item_change", side_effect=outage):
            with pytest.raises(UnavailableError):
                svc.update_line_item(line_item["id"], {"quantity": "5"})

        item = db.session.get(LineItem, line_item["id"])
        assert item.estimated_quantity == Decimal("100")
        assert _estimate_total(estimate["id"]) == Decimal("1000.00")

    def test_domain_errors_are_not_retried(self, line_item):
        with patch.object(rollup, "rollup_after_item_change") as mock_rollup:
            with pytest.raises(CategoryNotFoundError):
                svc.update_line_item(line_item["id"], {"category_id": 404})
        mock_rollup.assert_not_called()
