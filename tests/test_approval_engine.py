from __future__ import annotations

import itertools

import pytest

from conftest import make_expense, make_rule
from expenseflow import db
from expenseflow.errors import AlreadyProcessed, NoApproverConfigured, NotFound, PermissionDenied
from expenseflow.models import (
    ApprovalRequest,
    ApprovalRequestStatus,
    AuditLog,
    Expense,
    ExpenseStatus,
    Notification,
    NotificationType,
    UserRole,
)
from expenseflow.services.approval_engine import workflow_engine
from expenseflow.services.approval_ledger import approval_ledger

APPROVED = ApprovalRequestStatus.APPROVED
REJECTED = ApprovalRequestStatus.REJECTED
PENDING = ApprovalRequestStatus.PENDING


def requests_for(expense):
    return approval_ledger.list_for_expense(expense.id)


def status_of(expense):
    return db.session.get(Expense, expense.id).status


def request_of(expense, user):
    return ApprovalRequest.query.filter_by(expense_id=expense.id, approver_user_id=user.id).one()


def test_manager_fallback_creates_single_request(org):
    expense = make_expense(org.employee)

    created = workflow_engine.submit_expense(expense.id, org.employee)

    assert [req.approver_user_id for req in created] == [org.manager.id]
    rows = requests_for(expense)
    assert len(rows) == 1
    assert rows[0].approver_user_id == org.manager.id
    assert rows[0].status == PENDING
    assert status_of(expense) == ExpenseStatus.SUBMITTED
    assert db.session.get(Expense, expense.id).submitted_at is not None


def test_manager_fallback_approval_approves_expense(org):
    expense = make_expense(org.employee)
    (request,) = workflow_engine.submit_expense(expense.id, org.employee)

    result = workflow_engine.record_decision(request.id, org.manager.id, APPROVED, "Looks fine")

    assert result.final_status == ExpenseStatus.APPROVED
    assert status_of(expense) == ExpenseStatus.APPROVED
    assert request_of(expense, org.manager).comments == "Looks fine"
    assert request_of(expense, org.manager).decided_at is not None


def test_submission_without_any_approver_fails_and_stalls(org):
    expense = make_expense(org.loner)

    with pytest.raises(NoApproverConfigured):
        workflow_engine.submit_expense(expense.id, org.loner)

    assert status_of(expense) == ExpenseStatus.SUBMITTED
    assert approval_ledger.count_for_expense(expense.id) == 0
    assert AuditLog.query.filter_by(entity_id=expense.id, action="stalled_no_approver").count() == 1


def test_stalled_expense_can_be_resubmitted_once_rule_exists(org):
    expense = make_expense(org.loner)
    with pytest.raises(NoApproverConfigured):
        workflow_engine.submit_expense(expense.id, org.loner)

    make_rule(org.loner, [(org.finance, False)])
    created = workflow_engine.submit_expense(expense.id, org.admin)

    assert [req.approver_user_id for req in created] == [org.finance.id]


def test_submitting_twice_is_rejected(org):
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)

    with pytest.raises(AlreadyProcessed):
        workflow_engine.submit_expense(expense.id, org.employee)
    assert approval_ledger.count_for_expense(expense.id) == 1


def test_only_owner_or_admin_may_submit(org):
    expense = make_expense(org.employee)

    with pytest.raises(PermissionDenied):
        workflow_engine.submit_expense(expense.id, org.finance)
    assert status_of(expense) == ExpenseStatus.DRAFT


def test_parallel_rule_creates_every_request_at_once(org):
    make_rule(org.employee, [(org.finance, False), (org.director, False)])
    expense = make_expense(org.employee)

    created = workflow_engine.submit_expense(expense.id, org.employee)

    assert sorted(req.approver_user_id for req in created) == sorted([org.finance.id, org.director.id])
    assert all(req.status == PENDING for req in requests_for(expense))


def test_manager_inserted_first_and_not_duplicated(org):
    make_rule(
        org.employee,
        [(org.finance, False), (org.manager, False)],
        sequential=True,
        manager_approver=True,
    )
    expense = make_expense(org.employee)

    created = workflow_engine.submit_expense(expense.id, org.employee)

    assert [req.approver_user_id for req in created] == [org.manager.id]
    assert created[0].step_number == 0
    assert created[0].is_required is True
    steps = db.session.get(Expense, expense.id).route.steps
    assert [step["approver_id"] for step in steps] == [org.manager.id, org.finance.id]


def test_any_single_rejection_is_final(org):
    make_rule(org.employee, [(org.manager, False), (org.finance, False), (org.director, False)])
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)

    result = workflow_engine.record_decision(request_of(expense, org.finance).id, org.finance.id, REJECTED, "No receipt")

    assert result.final_status == ExpenseStatus.REJECTED
    assert status_of(expense) == ExpenseStatus.REJECTED
    assert request_of(expense, org.manager).status == PENDING
    assert request_of(expense, org.director).status == PENDING
    assert workflow_engine.list_pending_approvals(org.manager.id) == []

    with pytest.raises(AlreadyProcessed):
        workflow_engine.record_decision(request_of(expense, org.manager).id, org.manager.id, APPROVED)
    assert request_of(expense, org.manager).status == PENDING
    assert status_of(expense) == ExpenseStatus.REJECTED


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_parallel_expense_approved_only_when_all_approve(org, order):
    approvers = [org.manager, org.finance, org.director]
    make_rule(org.employee, [(user, False) for user in approvers], percentage=100)
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)

    for position, index in enumerate(order, start=1):
        approver = approvers[index]
        workflow_engine.record_decision(request_of(expense, approver).id, approver.id, APPROVED)
        expected = ExpenseStatus.APPROVED if position == len(order) else ExpenseStatus.SUBMITTED
        assert status_of(expense) == expected


def test_sequential_route_activates_one_approver_at_a_time(org):
    make_rule(
        org.employee,
        [(org.manager, False), (org.finance, False), (org.director, False)],
        sequential=True,
    )
    expense = make_expense(org.employee)

    created = workflow_engine.submit_expense(expense.id, org.employee)
    assert [req.approver_user_id for req in created] == [org.manager.id]
    assert approval_ledger.count_for_expense(expense.id) == 1

    result = workflow_engine.record_decision(created[0].id, org.manager.id, APPROVED)
    assert [req.approver_user_id for req in result.activated] == [org.finance.id]
    assert result.final_status is None
    assert status_of(expense) == ExpenseStatus.SUBMITTED
    assert approval_ledger.count_for_expense(expense.id) == 2

    result = workflow_engine.record_decision(request_of(expense, org.finance).id, org.finance.id, APPROVED)
    assert [req.approver_user_id for req in result.activated] == [org.director.id]
    assert approval_ledger.count_for_expense(expense.id) == 3

    result = workflow_engine.record_decision(request_of(expense, org.director).id, org.director.id, APPROVED)
    assert result.activated == []
    assert result.final_status == ExpenseStatus.APPROVED
    assert status_of(expense) == ExpenseStatus.APPROVED


def test_sequential_rejection_stops_the_route(org):
    make_rule(
        org.employee,
        [(org.manager, False), (org.finance, False), (org.director, False)],
        sequential=True,
    )
    expense = make_expense(org.employee)
    (first,) = workflow_engine.submit_expense(expense.id, org.employee)

    result = workflow_engine.record_decision(first.id, org.manager.id, REJECTED, "Over budget")

    assert result.activated == []
    assert status_of(expense) == ExpenseStatus.REJECTED
    assert approval_ledger.count_for_expense(expense.id) == 1


def test_second_decision_on_same_request_is_already_processed(org):
    make_rule(org.employee, [(org.manager, False), (org.finance, False)])
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)
    request_id = request_of(expense, org.manager).id

    workflow_engine.record_decision(request_id, org.manager.id, APPROVED)
    with pytest.raises(AlreadyProcessed):
        workflow_engine.record_decision(request_id, org.manager.id, APPROVED)
    with pytest.raises(AlreadyProcessed):
        workflow_engine.record_decision(request_id, org.manager.id, REJECTED)

    assert request_of(expense, org.manager).status == APPROVED
    assert status_of(expense) == ExpenseStatus.SUBMITTED


def test_decision_by_someone_else_is_not_found(org):
    expense = make_expense(org.employee)
    (request,) = workflow_engine.submit_expense(expense.id, org.employee)

    with pytest.raises(NotFound):
        workflow_engine.record_decision(request.id, org.finance.id, APPROVED)
    with pytest.raises(NotFound):
        workflow_engine.record_decision(9999, org.manager.id, APPROVED)
    assert request_of(expense, org.manager).status == PENDING


def test_worked_example_manager_then_finance_lead_rejects(org):
    make_rule(
        org.employee,
        [(org.manager, True), (org.finance, False)],
        sequential=True,
        percentage=100,
    )
    expense = make_expense(org.employee, amount="500.00")

    created = workflow_engine.submit_expense(expense.id, org.employee)
    assert [req.approver_user_id for req in created] == [org.manager.id]

    result = workflow_engine.record_decision(created[0].id, org.manager.id, APPROVED)
    assert request_of(expense, org.manager).status == APPROVED
    assert [req.approver_user_id for req in result.activated] == [org.finance.id]

    workflow_engine.record_decision(request_of(expense, org.finance).id, org.finance.id, REJECTED, "Duplicate")

    assert status_of(expense) == ExpenseStatus.REJECTED
    assert approval_ledger.count_for_expense(expense.id) == 2
    # Earlier approvals stay as history.
    assert request_of(expense, org.manager).status == APPROVED


def test_threshold_policy_approves_once_required_and_percentage_met(org):
    make_rule(
        org.employee,
        [(org.manager, True), (org.finance, False), (org.director, False)],
        percentage=50,
    )
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)

    workflow_engine.record_decision(request_of(expense, org.finance).id, org.finance.id, APPROVED)
    assert status_of(expense) == ExpenseStatus.SUBMITTED

    result = workflow_engine.record_decision(request_of(expense, org.manager).id, org.manager.id, APPROVED)
    assert result.final_status == ExpenseStatus.APPROVED

    assert workflow_engine.list_pending_approvals(org.director.id) == []
    with pytest.raises(AlreadyProcessed):
        workflow_engine.record_decision(request_of(expense, org.director).id, org.director.id, REJECTED)
    assert status_of(expense) == ExpenseStatus.APPROVED


def test_unanimous_policy_ignores_percentage(org, app):
    app.config["APPROVAL_POLICY"] = "unanimous"
    make_rule(org.employee, [(org.finance, False), (org.director, False)], percentage=50)
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)

    workflow_engine.record_decision(request_of(expense, org.finance).id, org.finance.id, APPROVED)
    assert status_of(expense) == ExpenseStatus.SUBMITTED

    workflow_engine.record_decision(request_of(expense, org.director).id, org.director.id, APPROVED)
    assert status_of(expense) == ExpenseStatus.APPROVED


def test_pending_list_includes_expense_summary(org):
    expense = make_expense(org.employee, amount="42.50", category="Meals")
    workflow_engine.submit_expense(expense.id, org.employee)

    (pending,) = workflow_engine.list_pending_approvals(org.manager.id)

    assert pending["status"] == "PENDING"
    assert pending["expense"]["id"] == expense.id
    assert pending["expense"]["employee_name"] == org.employee.full_name
    assert pending["expense"]["category"] == "Meals"
    assert pending["expense"]["amount"] == 42.5


def test_history_is_ordered_and_scoped(org):
    make_rule(org.employee, [(org.finance, False), (org.director, False)], sequential=True)
    expense = make_expense(org.employee)
    (first,) = workflow_engine.submit_expense(expense.id, org.employee)
    workflow_engine.record_decision(first.id, org.finance.id, APPROVED)

    history = workflow_engine.get_approval_history(expense.id, org.employee)
    assert [row["approver_user_id"] for row in history] == [org.finance.id, org.director.id]
    assert [row["status"] for row in history] == ["APPROVED", "PENDING"]

    with pytest.raises(PermissionDenied):
        workflow_engine.get_approval_history(expense.id, org.loner)


def test_notifications_sent_to_approvers_and_employee(org):
    expense = make_expense(org.employee)
    (request,) = workflow_engine.submit_expense(expense.id, org.employee)

    assigned = Notification.query.filter_by(user_id=org.manager.id).one()
    assert assigned.type == NotificationType.EXPENSE_SUBMITTED
    assert assigned.data["expense_id"] == expense.id

    workflow_engine.record_decision(request.id, org.manager.id, REJECTED, "Missing receipt")

    decision = Notification.query.filter_by(user_id=org.employee.id).one()
    assert decision.type == NotificationType.EXPENSE_REJECTED
    assert "Missing receipt" in decision.message


def test_notification_failure_does_not_undo_workflow(org, monkeypatch):
    import expenseflow.services.notification_service as notifications

    def broken_notification(**kwargs):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(notifications, "Notification", broken_notification)
    expense = make_expense(org.employee)

    (request,) = workflow_engine.submit_expense(expense.id, org.employee)
    workflow_engine.record_decision(request.id, org.manager.id, APPROVED)

    assert status_of(expense) == ExpenseStatus.APPROVED


def test_lost_compare_and_set_is_retried_once(org, monkeypatch):
    expense = make_expense(org.employee)
    (request,) = workflow_engine.submit_expense(expense.id, org.employee)

    real_update = approval_ledger.update_if_status
    calls = []

    def flaky_update(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return False
        return real_update(*args, **kwargs)

    monkeypatch.setattr(approval_ledger, "update_if_status", flaky_update)
    workflow_engine.record_decision(request.id, org.manager.id, APPROVED)

    assert len(calls) == 2
    assert status_of(expense) == ExpenseStatus.APPROVED


def test_persistent_conflict_surfaces_already_processed(org, monkeypatch):
    expense = make_expense(org.employee)
    (request,) = workflow_engine.submit_expense(expense.id, org.employee)

    monkeypatch.setattr(approval_ledger, "update_if_status", lambda *args, **kwargs: False)
    with pytest.raises(AlreadyProcessed):
        workflow_engine.record_decision(request.id, org.manager.id, APPROVED)

    assert request_of(expense, org.manager).status == PENDING
    assert status_of(expense) == ExpenseStatus.SUBMITTED


def test_deactivated_rule_approver_is_skipped(org):
    make_rule(org.employee, [(org.finance, True), (org.director, False)], sequential=True)
    org.finance.is_active = False
    db.session.commit()
    expense = make_expense(org.employee)

    created = workflow_engine.submit_expense(expense.id, org.employee)

    assert [req.approver_user_id for req in created] == [org.director.id]
    route = db.session.get(Expense, expense.id).route
    assert [step["approver_id"] for step in route.steps] == [org.director.id]


def test_rule_of_only_demoted_approvers_stalls(org):
    make_rule(org.loner, [(org.director, True)])
    org.director.role = UserRole.EMPLOYEE
    db.session.commit()
    expense = make_expense(org.loner)

    with pytest.raises(NoApproverConfigured):
        workflow_engine.submit_expense(expense.id, org.loner)
    assert approval_ledger.count_for_expense(expense.id) == 0


def test_manager_who_cannot_approve_is_not_a_fallback(org):
    org.manager.role = UserRole.EMPLOYEE
    db.session.commit()
    expense = make_expense(org.employee)

    with pytest.raises(NoApproverConfigured):
        workflow_engine.submit_expense(expense.id, org.employee)


def test_racing_resubmit_reports_already_processed(org, monkeypatch):
    expense = make_expense(org.employee)
    workflow_engine.submit_expense(expense.id, org.employee)
    # The other submit committed its requests after this one checked the ledger.
    monkeypatch.setattr(approval_ledger, "count_for_expense", lambda expense_id: 0)

    with pytest.raises(AlreadyProcessed):
        workflow_engine.submit_expense(expense.id, org.employee)

    assert ApprovalRequest.query.filter_by(expense_id=expense.id).count() == 1
    assert status_of(expense) == ExpenseStatus.SUBMITTED
