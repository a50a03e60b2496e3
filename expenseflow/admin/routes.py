"""Administrative routes for approval rules."""
from __future__ import annotations

from typing import Any

from flask_login import current_user, login_required

from expenseflow.errors import NotFound
from expenseflow.models import User, UserRole
from expenseflow.services.notification_service import notification_service
from expenseflow.services.rule_store import rule_repository
from expenseflow.utils.helpers import get_payload, json_response, role_required

from . import admin_bp


@admin_bp.route("/users", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def users() -> Any:
    """List users in the admin's company, for picking approvers."""
    users = User.query.filter_by(company_id=current_user.company_id).order_by(User.id).all()
    return json_response({"users": [user.to_dict() for user in users]})


@admin_bp.route("/rules", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def list_rules() -> Any:
    rules = rule_repository.list_for_company(current_user.company_id)
    return json_response({"rules": [rule.to_dict() for rule in rules]})


@admin_bp.route("/rules/<int:employee_id>", methods=["GET"])
@login_required
@role_required(UserRole.ADMIN)
def get_rule(employee_id: int) -> Any:
    rule = rule_repository.get_by_employee(employee_id)
    if rule is None or rule.company_id != current_user.company_id:
        raise NotFound("Approval rule not found.")
    return json_response({"rule": rule.to_dict()})


@admin_bp.route("/rules/<int:employee_id>", methods=["PUT"])
@login_required
@role_required(UserRole.ADMIN)
def upsert_rule(employee_id: int) -> Any:
    """Create or replace the employee's approval rule."""
    rule = rule_repository.upsert(employee_id, get_payload(), current_user)
    notification_service.notify_rule_updated(employee_id, rule.company_id, current_user.full_name)
    return json_response({"message": "Approval rule saved.", "rule": rule.to_dict()})


@admin_bp.route("/rules/<int:employee_id>", methods=["DELETE"])
@login_required
@role_required(UserRole.ADMIN)
def delete_rule(employee_id: int) -> Any:
    rule_repository.delete(employee_id, current_user)
    return json_response({"message": "Approval rule deleted."})
