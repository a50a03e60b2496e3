"""Email service for approval workflow messages."""
from __future__ import annotations

import logging
from typing import Optional

from flask import current_app
from flask_mail import Mail, Message

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending workflow emails through Flask-Mail."""

    def __init__(self, mail: Optional[Mail] = None):
        self.mail = mail

    def send_approval_request_email(self, email: str, approver_name: str, expense: dict) -> bool:
        """Tell an approver an expense is waiting for them."""
        subject = f"ExpenseFlow - Expense #{expense.get('id')} awaits your approval"
        text_body = (
            f"Hi {approver_name},\n\n"
            f"{expense.get('employee_name') or 'An employee'} submitted an expense of "
            f"{self._format_amount(expense)} ({expense.get('category')}).\n"
            "Please review it from your pending approvals.\n\n"
            "--\nExpenseFlow"
        )
        html_body = (
            f"<p>Hi {approver_name},</p>"
            f"<p><strong>{expense.get('employee_name') or 'An employee'}</strong> submitted an expense of "
            f"<strong>{self._format_amount(expense)}</strong> ({expense.get('category')}).</p>"
            "<p>Please review it from your pending approvals.</p>"
        )
        return self._send_email(email, subject, html_body, text_body)

    def send_decision_email(
        self, email: str, employee_name: str, outcome: str, approver_name: str, comments: Optional[str]
    ) -> bool:
        """Tell an employee their expense reached a final decision."""
        subject = f"ExpenseFlow - Your expense was {outcome}"
        reason = f"\nComments: {comments}" if comments else ""
        text_body = (
            f"Hi {employee_name},\n\n"
            f"Your expense has been {outcome} by {approver_name}.{reason}\n\n"
            "--\nExpenseFlow"
        )
        html_reason = f"<p>Comments: {comments}</p>" if comments else ""
        html_body = (
            f"<p>Hi {employee_name},</p>"
            f"<p>Your expense has been <strong>{outcome}</strong> by {approver_name}.</p>{html_reason}"
        )
        return self._send_email(email, subject, html_body, text_body)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str = None) -> bool:
        """Send email using Flask-Mail."""
        try:
            if not self.mail:
                logger.error("Mail service not initialized")
                return False

            msg = Message(
                subject=subject,
                sender=current_app.config.get("MAIL_DEFAULT_SENDER"),
                recipients=[to_email],
            )
            if html_body:
                msg.html = html_body
            if text_body:
                msg.body = text_body

            self.mail.send(msg)
            logger.info(f"Email sent successfully to {to_email}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False

    @staticmethod
    def _format_amount(expense: dict) -> str:
        amount = expense.get("amount_in_company_currency")
        currency = expense.get("company_currency")
        if amount is None:
            amount, currency = expense.get("amount"), expense.get("currency")
        return f"{amount} {currency}"


# Global email service instance
email_service = EmailService()


def init_email_service(mail: Mail) -> None:
    """Initialize the email service with Flask-Mail instance."""
    email_service.mail = mail
