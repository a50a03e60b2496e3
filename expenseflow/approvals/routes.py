"""Approver routes: pending queue, decisions and history."""
from __future__ import annotations

from typing import Any

from flask_login import current_user, login_required

from expenseflow.models import APPROVER_ROLES, ApprovalRequestStatus
from expenseflow.services.approval_engine import DecisionResult, workflow_engine
from expenseflow.utils.helpers import get_payload, json_response, role_required

from . import approvals_bp


def _decision_response(result: DecisionResult) -> Any:
    outcome = result.approval.status.value.lower()
    return json_response(
        {
            "message": f"Expense {outcome} successfully",
            "status": outcome,
            "approval": result.approval.to_dict(),
            "expense": result.expense.to_dict(),
            "activated": [approval.to_dict() for approval in result.activated],
        }
    )


@approvals_bp.route("/pending", methods=["GET"])
@login_required
@role_required(*APPROVER_ROLES)
def pending_approvals() -> Any:
    """Return pending approvals assigned to the current user."""
    return json_response({"approvals": workflow_engine.list_pending_approvals(current_user.id)})


@approvals_bp.route("/<int:request_id>/approve", methods=["POST"])
@login_required
@role_required(*APPROVER_ROLES)
def approve(request_id: int) -> Any:
    comments = get_payload().get("comments")
    result = workflow_engine.decide(request_id, current_user, ApprovalRequestStatus.APPROVED, comments)
    return _decision_response(result)


@approvals_bp.route("/<int:request_id>/reject", methods=["POST"])
@login_required
@role_required(*APPROVER_ROLES)
def reject(request_id: int) -> Any:
    comments = get_payload().get("comments")
    result = workflow_engine.decide(request_id, current_user, ApprovalRequestStatus.REJECTED, comments)
    return _decision_response(result)


@approvals_bp.route("/<int:request_id>/process", methods=["POST"])
@login_required
@role_required(*APPROVER_ROLES)
def process(request_id: int) -> Any:
    """Generic decision endpoint taking ``{"action": "approved" | "rejected"}``."""
    payload = get_payload()
    result = workflow_engine.decide(request_id, current_user, payload.get("action"), payload.get("comments"))
    return _decision_response(result)


@approvals_bp.route("/expense/<int:expense_id>", methods=["GET"])
@login_required
def approval_history(expense_id: int) -> Any:
    return json_response({"approvals": workflow_engine.get_approval_history(expense_id, current_user)})
