"""Approval rule store: read and write per-employee approval policies."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from expenseflow.errors import NotFound, PermissionDenied, ValidationFailed
from expenseflow.models import ApprovalRule, AuditLog, RuleApprover, User, UserRole, db

logger = logging.getLogger(__name__)


def _as_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"true", "1", "yes", "false", "0", "no"}:
        return value.lower() in {"true", "1", "yes"}
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ValidationFailed(f"'{field}' must be a boolean.")


def _as_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationFailed(f"'{field}' must be an integer.")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationFailed(f"'{field}' must be an integer.") from None
    return number


class ApprovalRuleRepository:
    """Data access for :class:`ApprovalRule`. Holds no workflow logic."""

    def get_by_employee(self, employee_id: int) -> Optional[ApprovalRule]:
        return ApprovalRule.query.filter_by(employee_id=employee_id).first()

    def list_for_company(self, company_id: int) -> List[ApprovalRule]:
        return (
            ApprovalRule.query.filter_by(company_id=company_id)
            .order_by(ApprovalRule.employee_id)
            .all()
        )

    def upsert(self, employee_id: int, payload: Dict[str, Any], actor: User) -> ApprovalRule:
        """Create or replace the employee's rule after validating it."""
        employee = self._load_employee(employee_id, actor)

        is_sequential = _as_bool(payload.get("approvers_sequence", False), "approvers_sequence")
        is_manager_approver = _as_bool(payload.get("is_manager_approver", False), "is_manager_approver")
        percentage = _as_int(payload.get("minimum_approval_percentage", 100), "minimum_approval_percentage")
        if not 1 <= percentage <= 100:
            raise ValidationFailed("'minimum_approval_percentage' must be between 1 and 100.")

        manager_id = payload.get("manager_id")
        if manager_id is not None:
            manager_id = _as_int(manager_id, "manager_id")
            self._load_approver(manager_id, employee.company_id, "manager_id")

        approvers = self._normalize_approvers(payload.get("approvers") or [], employee, is_sequential)

        rule = self.get_by_employee(employee_id)
        created = rule is None
        if created:
            rule = ApprovalRule(employee_id=employee_id, company_id=employee.company_id)
            db.session.add(rule)
        else:
            rule.approvers.clear()
            db.session.flush()

        rule.description = payload.get("description")
        rule.manager_id = manager_id
        rule.is_manager_approver = is_manager_approver
        rule.approvers_sequence = is_sequential
        rule.minimum_approval_percentage = percentage
        for spec in approvers:
            rule.approvers.append(RuleApprover(**spec))

        db.session.flush()
        AuditLog.record(
            "approval_rule",
            rule.id,
            "created" if created else "updated",
            user_id=actor.id,
            employee_id=employee_id,
            approvers=[spec["approver_user_id"] for spec in approvers],
        )
        db.session.commit()
        logger.info(f"Approval rule for employee {employee_id} {'created' if created else 'updated'} by {actor.id}")
        return rule

    def delete(self, employee_id: int, actor: User) -> None:
        self._load_employee(employee_id, actor)
        rule = self.get_by_employee(employee_id)
        if rule is None:
            raise NotFound("Approval rule not found.")
        AuditLog.record("approval_rule", rule.id, "deleted", user_id=actor.id, employee_id=employee_id)
        db.session.delete(rule)
        db.session.commit()
        logger.info(f"Approval rule for employee {employee_id} deleted by {actor.id}")

    # Helpers ----------------------------------------------------------------

    def _load_employee(self, employee_id: int, actor: User) -> User:
        if actor.role != UserRole.ADMIN:
            raise PermissionDenied("Only admins can edit approval rules.")
        employee = db.session.get(User, employee_id)
        if employee is None or employee.company_id != actor.company_id:
            raise NotFound("Employee not found.")
        return employee

    def _load_approver(self, user_id: int, company_id: int, field: str) -> User:
        """Approvers must be active managers or admins of the employee's company."""
        user = db.session.get(User, user_id)
        if user is None or user.company_id != company_id:
            raise ValidationFailed(f"'{field}' must reference a user in the same company.")
        if not (user.can_approve and user.is_active):
            raise ValidationFailed(f"'{field}' must reference an active manager or admin.")
        return user

    def _normalize_approvers(
        self, raw_approvers: Any, employee: User, is_sequential: bool
    ) -> List[Dict[str, Any]]:
        if not isinstance(raw_approvers, list):
            raise ValidationFailed("'approvers' must be a list.")

        normalized: List[Dict[str, Any]] = []
        seen = set()
        for position, raw in enumerate(raw_approvers, start=1):
            if not isinstance(raw, dict):
                raise ValidationFailed("Each approver must be an object.")
            user_id = raw.get("approver_user_id", raw.get("user_id"))
            if user_id is None:
                raise ValidationFailed("Each approver needs an 'approver_user_id'.")
            user_id = _as_int(user_id, "approver_user_id")
            if user_id in seen:
                raise ValidationFailed(f"Approver {user_id} is listed more than once.")
            if user_id == employee.id:
                raise ValidationFailed("An employee cannot approve their own expenses.")
            seen.add(user_id)
            self._load_approver(user_id, employee.company_id, "approver_user_id")

            order = raw.get("sequence_order")
            normalized.append(
                {
                    "approver_user_id": user_id,
                    "required": _as_bool(raw.get("required", False), "required"),
                    "sequence_order": position if order is None else _as_int(order, "sequence_order"),
                }
            )

        if is_sequential:
            orders = sorted(spec["sequence_order"] for spec in normalized)
            if orders != list(range(1, len(normalized) + 1)):
                raise ValidationFailed(
                    "Sequential rules need unique 'sequence_order' values numbered 1..N."
                )

        return sorted(normalized, key=lambda spec: spec["sequence_order"])


rule_repository = ApprovalRuleRepository()
