"""Approval-related models."""
from __future__ import annotations

import enum

from expenseflow import db


class ApprovalRequestStatus(enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalRule(db.Model):
    """Per-employee approval policy, edited by company admins."""

    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_manager_approver = db.Column(db.Boolean, nullable=False, default=False)
    approvers_sequence = db.Column(db.Boolean, nullable=False, default=False)
    minimum_approval_percentage = db.Column(db.Integer, nullable=False, default=100)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now(), nullable=False)

    company = db.relationship("Company", back_populates="approval_rules")
    employee = db.relationship("User", foreign_keys=[employee_id])
    manager = db.relationship("User", foreign_keys=[manager_id])
    approvers = db.relationship(
        "RuleApprover",
        back_populates="rule",
        lazy="selectin",
        order_by="RuleApprover.sequence_order",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "employee_id": self.employee_id,
            "description": self.description,
            "manager_id": self.manager_id,
            "is_manager_approver": self.is_manager_approver,
            "approvers_sequence": self.approvers_sequence,
            "minimum_approval_percentage": self.minimum_approval_percentage,
            "approvers": [approver.to_dict() for approver in self.approvers],
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<ApprovalRule employee_id={self.employee_id} sequential={self.approvers_sequence}>"


class RuleApprover(db.Model):
    __tablename__ = "rule_approvers"
    __table_args__ = (db.UniqueConstraint("rule_id", "approver_user_id", name="uq_rule_approver"),)

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("approval_rules.id"), nullable=False, index=True)
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=False)
    sequence_order = db.Column(db.Integer, nullable=False, default=1)

    rule = db.relationship("ApprovalRule", back_populates="approvers")
    approver = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "approver_user_id": self.approver_user_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "required": self.required,
            "sequence_order": self.sequence_order,
        }

    def __repr__(self) -> str:
        return f"<RuleApprover user_id={self.approver_user_id} order={self.sequence_order}>"


class ApprovalRoute(db.Model):
    """Approver route resolved for one expense when it was submitted.

    ``steps`` holds ``{"approver_id", "required", "position"}`` entries in
    activation order; position 0 is the auto-inserted manager.
    """

    __tablename__ = "approval_routes"

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, unique=True)
    # Plain id, not a foreign key: the snapshot outlives edits and deletes of the rule.
    rule_id = db.Column(db.Integer, nullable=True)
    steps = db.Column(db.JSON, nullable=False)
    is_sequential = db.Column(db.Boolean, nullable=False, default=False)
    minimum_approval_percentage = db.Column(db.Integer, nullable=False, default=100)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    expense = db.relationship("Expense", back_populates="route")

    @property
    def from_rule(self) -> bool:
        return self.rule_id is not None

    def step_after(self, approver_id: int) -> dict | None:
        """Return the step following ``approver_id`` in activation order."""
        ids = [step["approver_id"] for step in self.steps]
        try:
            index = ids.index(approver_id)
        except ValueError:
            return None
        return self.steps[index + 1] if index + 1 < len(self.steps) else None

    def to_dict(self) -> dict:
        return {
            "expense_id": self.expense_id,
            "rule_id": self.rule_id,
            "steps": self.steps,
            "is_sequential": self.is_sequential,
            "minimum_approval_percentage": self.minimum_approval_percentage,
        }

    def __repr__(self) -> str:
        return f"<ApprovalRoute expense_id={self.expense_id} steps={len(self.steps or [])}>"


class ApprovalRequest(db.Model):
    __tablename__ = "approval_requests"
    __table_args__ = (db.UniqueConstraint("expense_id", "approver_user_id", name="uq_request_approver"),)

    id = db.Column(db.Integer, primary_key=True)
    expense_id = db.Column(db.Integer, db.ForeignKey("expenses.id"), nullable=False, index=True)
    approver_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    step_number = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(
        db.Enum(ApprovalRequestStatus, name="approval_request_status"),
        nullable=False,
        default=ApprovalRequestStatus.PENDING,
    )
    comments = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    expense = db.relationship("Expense", back_populates="approval_requests")
    approver = db.relationship("User", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "expense_id": self.expense_id,
            "approver_user_id": self.approver_user_id,
            "approver_name": self.approver.full_name if self.approver else None,
            "step_number": self.step_number,
            "is_required": self.is_required,
            "status": self.status.value if self.status else None,
            "comments": self.comments,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest expense_id={self.expense_id} "
            f"status={self.status.value if self.status else None}>"
        )
