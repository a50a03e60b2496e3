"""Derive an expense's aggregate status from its approval requests."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from flask import current_app

from expenseflow.models import (
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRoute,
    AuditLog,
    Expense,
    ExpenseStatus,
    db,
)
from expenseflow.services.approval_ledger import ApprovalLedger, approval_ledger

logger = logging.getLogger(__name__)

THRESHOLD = "threshold"
UNANIMOUS = "unanimous"
POLICIES = {THRESHOLD, UNANIMOUS}


def evaluate(
    requests: Iterable[ApprovalRequest],
    route: Optional[ApprovalRoute],
    policy: str = THRESHOLD,
) -> Optional[ExpenseStatus]:
    """Return the status the expense should move to, or None to leave it submitted.

    Any rejection wins. Under ``unanimous`` every request must be approved.
    Under ``threshold`` every required request must be approved and the
    approved share of non-required approvers must reach the route's minimum
    percentage. Manager-only routes (no rule) always need unanimity.
    """
    if policy not in POLICIES:
        raise ValueError(f"Unknown approval policy '{policy}'")

    requests = list(requests)
    if not requests:
        return None
    if any(req.status == ApprovalRequestStatus.REJECTED for req in requests):
        return ExpenseStatus.REJECTED

    if policy == UNANIMOUS or route is None or not route.from_rule:
        if all(req.status == ApprovalRequestStatus.APPROVED for req in requests):
            return ExpenseStatus.APPROVED
        return None

    required = [step for step in route.steps if step["required"]]
    optional = [step for step in route.steps if not step["required"]]
    decided = {req.approver_user_id: req.status for req in requests}

    if any(decided.get(step["approver_id"]) != ApprovalRequestStatus.APPROVED for step in required):
        return None

    if optional:
        approved = sum(
            1 for step in optional if decided.get(step["approver_id"]) == ApprovalRequestStatus.APPROVED
        )
        if approved * 100 < route.minimum_approval_percentage * len(optional):
            return None

    return ExpenseStatus.APPROVED


def set_expense_status_if(expense_id: int, expected: ExpenseStatus, new: ExpenseStatus) -> bool:
    """Compare-and-set on ``Expense.status``."""
    updated = Expense.query.filter_by(id=expense_id, status=expected).update(
        {Expense.status: new}, synchronize_session="fetch"
    )
    return updated == 1


class StatusProjector:
    def __init__(self, ledger: ApprovalLedger = approval_ledger, policy: Optional[str] = None):
        self.ledger = ledger
        self._policy = policy

    @property
    def policy(self) -> str:
        return self._policy or current_app.config.get("APPROVAL_POLICY", THRESHOLD)

    def project(self, expense_id: int) -> Optional[ExpenseStatus]:
        """Recompute and persist the expense status; returns the new status if it changed."""
        expense = db.session.get(Expense, expense_id)
        if expense is None or expense.status != ExpenseStatus.SUBMITTED:
            return None

        route = ApprovalRoute.query.filter_by(expense_id=expense_id).first()
        target = evaluate(self.ledger.list_for_expense(expense_id), route, self.policy)
        if target is None:
            return None

        if not set_expense_status_if(expense_id, ExpenseStatus.SUBMITTED, target):
            return None

        AuditLog.record("expense", expense_id, target.value.lower(), policy=self.policy)
        logger.info(f"Expense {expense_id} projected to {target.value} ({self.policy})")
        return target


status_projector = StatusProjector()
