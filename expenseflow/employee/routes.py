"""Employee-facing routes."""
from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from flask import current_app
from flask_login import current_user, login_required

from expenseflow import db
from expenseflow.errors import NotFound, PermissionDenied, ValidationFailed
from expenseflow.models import AuditLog, Expense, ExpenseStatus, UserRole
from expenseflow.services import currency_service
from expenseflow.services.approval_engine import workflow_engine
from expenseflow.utils.helpers import get_payload, json_response, role_required

from . import employee_bp

EDITABLE_FIELDS = ("amount", "currency", "category", "description", "date_spent", "receipt_path")


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationFailed("Invalid amount.") from None
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailed("Amount must be greater than zero.")
    return amount


def _parse_date(value: Any) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid 'date_spent' format. Use YYYY-MM-DD.") from None


def _to_base_currency(amount: Decimal, currency: str) -> Decimal:
    base_currency = current_user.company.currency_code or current_app.config["DEFAULT_CURRENCY"]
    return currency_service.convert_currency(amount, currency, base_currency)


def _load_draft(expense_id: int, action: str) -> Expense:
    """Lock an expense the current user may change; only drafts can change."""
    expense = (
        Expense.query.filter_by(id=expense_id, company_id=current_user.company_id)
        .with_for_update(of=Expense)
        .first()
    )
    if expense is None:
        raise NotFound("Expense not found.")
    if expense.submitter_user_id != current_user.id and current_user.role != UserRole.ADMIN:
        raise PermissionDenied()
    if expense.status != ExpenseStatus.DRAFT:
        raise ValidationFailed(f"Only draft expenses can be {action}.")
    return expense


@employee_bp.route("/expenses", methods=["GET"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.ADMIN)
def list_expenses() -> Any:
    """List expenses submitted by the current employee."""
    expenses = (
        Expense.query.filter_by(submitter_user_id=current_user.id)
        .order_by(Expense.id.desc())
        .all()
    )
    return json_response({"expenses": [expense.to_dict() for expense in expenses]})


@employee_bp.route("/expenses", methods=["POST"])
@login_required
@role_required(UserRole.EMPLOYEE, UserRole.ADMIN)
def create_expense() -> Any:
    """Create a draft expense; it is routed for approval only when submitted."""
    payload = get_payload()

    required_fields = {"amount", "currency", "category", "date_spent"}
    if missing := required_fields - payload.keys():
        raise ValidationFailed(f"Missing fields: {', '.join(sorted(missing))}")

    amount_original = _parse_amount(payload["amount"])
    spent_date = _parse_date(payload["date_spent"])
    currency = str(payload["currency"]).upper()

    expense = Expense(
        company_id=current_user.company_id,
        submitter_user_id=current_user.id,
        amount_original=amount_original,
        currency_original=currency,
        amount_in_company_currency=_to_base_currency(amount_original, currency),
        category=payload["category"],
        description=payload.get("description"),
        date_spent=spent_date,
        status=ExpenseStatus.DRAFT,
        receipt_path=payload.get("receipt_path"),
    )
    db.session.add(expense)
    db.session.commit()

    return json_response({"message": "Expense created.", "expense": expense.to_dict()}, status=201)


@employee_bp.route("/expenses/<int:expense_id>", methods=["GET"])
@login_required
def expense_detail(expense_id: int) -> Any:
    """Expense details with its approval history."""
    expense = Expense.query.filter_by(id=expense_id, submitter_user_id=current_user.id).first()
    if expense is None:
        raise NotFound("Expense not found.")

    return json_response(
        {
            "expense": expense.to_dict(),
            "approvals": workflow_engine.get_approval_history(expense.id, current_user),
        }
    )


@employee_bp.route("/expenses/<int:expense_id>", methods=["PUT"])
@login_required
def update_expense(expense_id: int) -> Any:
    """Edit a draft expense. Only the fields present in the body change."""
    payload = get_payload()
    changes: Dict[str, Any] = {field: payload[field] for field in EDITABLE_FIELDS if field in payload}
    if not changes:
        raise ValidationFailed(f"Nothing to update. Editable fields: {', '.join(EDITABLE_FIELDS)}")

    if "amount" in changes:
        changes["amount"] = _parse_amount(changes["amount"])
    if "currency" in changes:
        changes["currency"] = str(changes["currency"]).upper()
    if "date_spent" in changes:
        changes["date_spent"] = _parse_date(changes["date_spent"])
    if "category" in changes and not changes["category"]:
        raise ValidationFailed("Category cannot be empty.")

    expense = _load_draft(expense_id, "edited")
    expense.amount_original = changes.get("amount", expense.amount_original)
    expense.currency_original = changes.get("currency", expense.currency_original)
    expense.date_spent = changes.get("date_spent", expense.date_spent)
    expense.category = changes.get("category", expense.category)
    expense.description = changes.get("description", expense.description)
    expense.receipt_path = changes.get("receipt_path", expense.receipt_path)
    if "amount" in changes or "currency" in changes:
        expense.amount_in_company_currency = _to_base_currency(expense.amount_original, expense.currency_original)

    AuditLog.record("expense", expense.id, "updated", user_id=current_user.id, fields=sorted(changes))
    db.session.commit()
    return json_response({"message": "Expense updated.", "expense": expense.to_dict()})


@employee_bp.route("/expenses/<int:expense_id>", methods=["DELETE"])
@login_required
def delete_expense(expense_id: int) -> Any:
    """Delete a draft expense."""
    expense = _load_draft(expense_id, "deleted")
    AuditLog.record("expense", expense.id, "deleted", user_id=current_user.id)
    db.session.delete(expense)
    db.session.commit()
    return json_response({"message": "Expense deleted."})


@employee_bp.route("/expenses/<int:expense_id>/submit", methods=["POST"])
@login_required
def submit_expense(expense_id: int) -> Any:
    """Submit a draft expense for approval."""
    created = workflow_engine.submit_expense(expense_id, current_user)
    expense = db.session.get(Expense, expense_id)
    return json_response(
        {
            "message": "Expense submitted for approval.",
            "expense": expense.to_dict(),
            "approvals": [approval.to_dict() for approval in created],
        }
    )
