"""
Exhaustive state-machine transition tests for Estimate.

ESTIMATE_TRANSITIONS -- 5 states, 6 valid edges
    - draft -> submitted | archived
    - submitted -> approved | rejected | archived
    - approved -> archived
    - rejected -> archived
    - archived -> (terminal)

Every valid edge succeeds through transition_estimate; every other
(from, to) pair, self-transitions included, raises InvalidTransitionError
and leaves the status unchanged.
"""

import pytest

from budget_ledger.core.exceptions import EstimateNotFoundError, InvalidTransitionError
from budget_ledger.models import db
from budget_ledger.models.ledger import (
    ESTIMATE_STATUSES,
    ESTIMATE_TRANSITIONS,
    Estimate,
    validate_estimate_transition,
)
from budget_ledger.services import estimate_service


def _valid_transitions(transitions: dict) -> list[tuple[str, str]]:
    return [(src, tgt) for src, targets in transitions.items() for tgt in targets]


def _invalid_transitions(transitions: dict) -> list[tuple[str, str]]:
    all_statuses = set(transitions.keys())
    return [
        (src, candidate)
        for src, valid_targets in transitions.items()
        for candidate in sorted(all_statuses)
        if candidate not in valid_targets
    ]


def _estimate_at(site_id: int, status: str) -> Estimate:
    """Create an Estimate at the given status directly (bypasses the machine)."""
    est = Estimate(site_id=site_id, title=f"At {status}", status=status, estimated_total=0)
    db.session.add(est)
    db.session.commit()
    return est


def test_statuses_and_transitions_agree():
    assert set(ESTIMATE_TRANSITIONS) == ESTIMATE_STATUSES
    assert len(_valid_transitions(ESTIMATE_TRANSITIONS)) == 6


class TestEstimateTransitionsValid:
    @pytest.mark.parametrize("from_status,to_status", _valid_transitions(ESTIMATE_TRANSITIONS))
    def test_valid(self, site, from_status, to_status):
        est = _estimate_at(site["id"], from_status)
        result = estimate_service.transition_estimate(est.id, to_status)
        assert result["status"] == to_status


class TestEstimateTransitionsInvalid:
    @pytest.mark.parametrize("from_status,to_status", _invalid_transitions(ESTIMATE_TRANSITIONS))
    def test_invalid(self, site, from_status, to_status):
        est = _estimate_at(site["id"], from_status)
        with pytest.raises(InvalidTransitionError) as exc_info:
            estimate_service.transition_estimate(est.id, to_status)
        assert exc_info.value.old_status == from_status
        assert db.session.get(Estimate, est.id).status == from_status

    def test_unknown_status(self, estimate):
        with pytest.raises(InvalidTransitionError):
            estimate_service.transition_estimate(estimate["id"], "paid")

    def test_unknown_estimate(self):
        with pytest.raises(EstimateNotFoundError):
            estimate_service.transition_estimate(404, "submitted")


class TestValidateHelper:
    @pytest.mark.parametrize("old,new,expected", [
        ("draft", "submitted", True),
        ("draft", "approved", False),
        ("archived", "draft", False),
        ("nonsense", "draft", False),
    ])
    def test_validate_estimate_transition(self, old, new, expected):
        assert validate_estimate_transition(old, new) is expected


def test_status_does_not_block_ledger_writes(site, category):
    """Variance tracking continues on approved and archived estimates."""
    from budget_ledger.services import ledger_service

    est = _estimate_at(site["id"], "archived")
    item = ledger_service.create_line_item(est.id, {
        "description": "Late delivery", "category_id": category["id"],
        "unit": "pcs", "unit_price": "3.00",
    })
    actual = ledger_service.record_actual(item["id"], "4.00")
    assert actual["variance_amount"] == "1.00"
