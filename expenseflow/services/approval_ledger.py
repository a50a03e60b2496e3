"""Approval request ledger: one row per (expense, approver) decision."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from expenseflow.models import (
    ApprovalRequest,
    ApprovalRequestStatus,
    Expense,
    ExpenseStatus,
    db,
)


class ApprovalLedger:
    """Creates and mutates :class:`ApprovalRequest` rows.

    Rows are never deleted. A row leaves ``PENDING`` only through
    :meth:`update_if_status`, which is a compare-and-set on the current status.
    """

    def create_pending(
        self, expense_id: int, approver_id: int, step_number: int, is_required: bool = False
    ) -> ApprovalRequest:
        approval = ApprovalRequest(
            expense_id=expense_id,
            approver_user_id=approver_id,
            step_number=step_number,
            is_required=is_required,
            status=ApprovalRequestStatus.PENDING,
        )
        db.session.add(approval)
        db.session.flush()
        return approval

    def get(self, request_id: int) -> Optional[ApprovalRequest]:
        return db.session.get(ApprovalRequest, request_id)

    def update_if_status(
        self,
        request_id: int,
        expected: ApprovalRequestStatus,
        new: ApprovalRequestStatus,
        comments: Optional[str] = None,
    ) -> bool:
        """Move a row from ``expected`` to ``new``; False when the row was not in ``expected``."""
        updated = (
            ApprovalRequest.query.filter_by(id=request_id, status=expected)
            .update(
                {
                    ApprovalRequest.status: new,
                    ApprovalRequest.comments: comments,
                    ApprovalRequest.decided_at: datetime.now(timezone.utc),
                },
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def list_for_expense(self, expense_id: int) -> List[ApprovalRequest]:
        return (
            ApprovalRequest.query.filter_by(expense_id=expense_id)
            .order_by(ApprovalRequest.step_number, ApprovalRequest.id)
            .all()
        )

    def count_for_expense(self, expense_id: int) -> int:
        return ApprovalRequest.query.filter_by(expense_id=expense_id).count()

    def list_pending_for_approver(self, approver_id: int) -> List[ApprovalRequest]:
        """Pending rows assigned to ``approver_id`` whose expense still awaits a decision."""
        return (
            ApprovalRequest.query.join(Expense, Expense.id == ApprovalRequest.expense_id)
            .filter(
                ApprovalRequest.approver_user_id == approver_id,
                ApprovalRequest.status == ApprovalRequestStatus.PENDING,
                Expense.status == ExpenseStatus.SUBMITTED,
            )
            .order_by(Expense.submitted_at.desc(), ApprovalRequest.id.desc())
            .all()
        )


approval_ledger = ApprovalLedger()
