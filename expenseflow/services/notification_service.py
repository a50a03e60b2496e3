"""Approval notifications: in-app rows plus optional email.

Every ``notify_*`` call is best-effort. It commits its own notification row
and never raises, so a failure here cannot undo a workflow state change that
was already committed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app

from expenseflow.errors import NotFound
from expenseflow.models import Notification, NotificationType, User, db
from expenseflow.services.email_service import EmailService, email_service

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, mailer: EmailService = email_service):
        self.mailer = mailer

    # Emitters ---------------------------------------------------------------

    def notify_approver_assigned(self, approver_id: int, expense_summary: Dict[str, Any]) -> bool:
        employee_name = expense_summary.get("employee_name") or "An employee"
        return self._emit(
            approver_id,
            NotificationType.EXPENSE_SUBMITTED,
            "New Expense Submitted",
            f"{employee_name} submitted an expense of {expense_summary.get('amount')} "
            f"{expense_summary.get('currency')} for approval.",
            data={
                "expense_id": expense_summary.get("id"),
                "employee_id": expense_summary.get("employee_id"),
                "amount": expense_summary.get("amount"),
                "currency": expense_summary.get("currency"),
            },
            company_id=expense_summary.get("company_id"),
            email=lambda user: self.mailer.send_approval_request_email(
                user.email, user.full_name, expense_summary
            ),
        )

    def notify_employee_decision(
        self,
        employee_id: int,
        outcome: str,
        approver_name: str,
        comments: Optional[str] = None,
        expense_summary: Optional[Dict[str, Any]] = None,
    ) -> bool:
        expense_summary = expense_summary or {}
        approved = outcome == "approved"
        message = f"Your expense has been {outcome} by {approver_name}."
        if comments and not approved:
            message += f" Reason: {comments}"
        return self._emit(
            employee_id,
            NotificationType.EXPENSE_APPROVED if approved else NotificationType.EXPENSE_REJECTED,
            "Expense Approved" if approved else "Expense Rejected",
            message,
            data={
                "expense_id": expense_summary.get("id"),
                "approver_name": approver_name,
                "comments": comments,
            },
            company_id=expense_summary.get("company_id"),
            email=lambda user: self.mailer.send_decision_email(
                user.email, user.full_name, outcome, approver_name, comments
            ),
        )

    def notify_rule_updated(self, employee_id: int, company_id: int, admin_name: str) -> bool:
        return self._emit(
            employee_id,
            NotificationType.APPROVAL_RULE_UPDATED,
            "Approval Rules Updated",
            f"Your approval rules have been updated by {admin_name}.",
            data={"admin_name": admin_name},
            company_id=company_id,
        )

    # Inbox ------------------------------------------------------------------

    def list_for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> List[Notification]:
        return (
            Notification.query.filter_by(user_id=user_id)
            .order_by(Notification.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def unread_count(self, user_id: int) -> int:
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    def mark_read(self, user_id: int, notification_ids: Optional[Iterable[int]] = None) -> int:
        """Mark the given notifications (or all of them) read; returns rows updated."""
        query = Notification.query.filter_by(user_id=user_id, is_read=False)
        if notification_ids is not None:
            query = query.filter(Notification.id.in_(list(notification_ids)))
        updated = query.update(
            {Notification.is_read: True, Notification.read_at: datetime.now(timezone.utc)},
            synchronize_session=False,
        )
        db.session.commit()
        return updated

    def delete(self, user_id: int, notification_id: int) -> None:
        """Remove one notification from the user's inbox."""
        notification = Notification.query.filter_by(id=notification_id, user_id=user_id).first()
        if notification is None:
            raise NotFound("Notification not found.")
        db.session.delete(notification)
        db.session.commit()

    # Internals --------------------------------------------------------------

    def _emit(
        self,
        user_id: int,
        kind: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        company_id: Optional[int] = None,
        email=None,
    ) -> bool:
        try:
            db.session.add(
                Notification(
                    user_id=user_id,
                    company_id=company_id,
                    type=kind,
                    title=title,
                    message=message,
                    data=data,
                )
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to create {kind.value} notification for user {user_id}: {str(e)}")
            return False

        if email is not None and current_app.config.get("NOTIFY_BY_EMAIL"):
            try:
                user = db.session.get(User, user_id)
                if user is not None:
                    email(user)
            except Exception as e:
                logger.error(f"Failed to email {kind.value} notification to user {user_id}: {str(e)}")
        return True


notification_service = NotificationService()
