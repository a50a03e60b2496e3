from __future__ import annotations

from types import SimpleNamespace

import pytest

from expenseflow.models import ApprovalRequestStatus, ExpenseStatus
from expenseflow.services.status_projector import THRESHOLD, UNANIMOUS, evaluate

A = ApprovalRequestStatus.APPROVED
R = ApprovalRequestStatus.REJECTED
P = ApprovalRequestStatus.PENDING


def route(steps, percentage=100, rule_id=7):
    return SimpleNamespace(
        steps=[{"approver_id": uid, "required": required, "position": pos} for pos, (uid, required) in enumerate(steps)],
        minimum_approval_percentage=percentage,
        from_rule=rule_id is not None,
    )


def requests(*decisions):
    return [SimpleNamespace(approver_user_id=uid, status=status) for uid, status in decisions]


def test_no_requests_means_no_change():
    assert evaluate([], None) is None


@pytest.mark.parametrize("policy", [THRESHOLD, UNANIMOUS])
def test_any_rejection_wins(policy):
    rows = requests((1, A), (2, R), (3, P))
    assert evaluate(rows, route([(1, True), (2, False), (3, False)], percentage=1), policy) == ExpenseStatus.REJECTED


def test_unanimous_needs_every_request():
    rows = requests((1, A), (2, P))
    assert evaluate(rows, route([(1, False), (2, False)], percentage=50), UNANIMOUS) is None
    rows = requests((1, A), (2, A))
    assert evaluate(rows, route([(1, False), (2, False)], percentage=50), UNANIMOUS) == ExpenseStatus.APPROVED


def test_threshold_met_by_percentage_of_optional_approvers():
    rows = requests((1, A), (2, P), (3, P), (4, A))
    steps = route([(1, False), (2, False), (3, False), (4, False)], percentage=50)
    assert evaluate(rows, steps, THRESHOLD) == ExpenseStatus.APPROVED


def test_threshold_below_percentage_stays_submitted():
    rows = requests((1, A), (2, P), (3, P))
    steps = route([(1, False), (2, False), (3, False)], percentage=50)
    assert evaluate(rows, steps, THRESHOLD) is None


def test_required_approver_is_mandatory_regardless_of_percentage():
    rows = requests((1, P), (2, A), (3, A))
    steps = route([(1, True), (2, False), (3, False)], percentage=10)
    assert evaluate(rows, steps, THRESHOLD) is None

    rows = requests((1, A), (2, A), (3, P))
    assert evaluate(rows, steps, THRESHOLD) == ExpenseStatus.APPROVED


def test_only_required_approvers_need_all_of_them():
    rows = requests((1, A), (2, A))
    assert evaluate(rows, route([(1, True), (2, True)]), THRESHOLD) == ExpenseStatus.APPROVED


def test_steps_not_yet_created_count_as_not_approved():
    # Second approver has no request yet (sequential route mid-way).
    rows = requests((1, A))
    steps = route([(1, False), (2, False)], percentage=100)
    assert evaluate(rows, steps, THRESHOLD) is None


def test_manager_fallback_route_requires_unanimity():
    rows = requests((1, P))
    assert evaluate(rows, route([(1, True)], rule_id=None), THRESHOLD) is None
    rows = requests((1, A))
    assert evaluate(rows, None, THRESHOLD) == ExpenseStatus.APPROVED


def test_unknown_policy_is_rejected():
    with pytest.raises(ValueError):
        evaluate(requests((1, A)), None, "majority")
