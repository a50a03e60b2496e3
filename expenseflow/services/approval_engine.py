"""Approval workflow engine.

Turns a submitted expense into approval requests (parallel or sequential)
and applies approver decisions, keeping ``Expense.status`` consistent with
the ledger. Each public write runs as one transaction; notifications go out
only after it commits.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError

from expenseflow.errors import (
    AlreadyProcessed,
    NoApproverConfigured,
    NotFound,
    PermissionDenied,
    ValidationFailed,
    WorkflowError,
)
from expenseflow.models import (
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRoute,
    ApprovalRule,
    AuditLog,
    Expense,
    ExpenseStatus,
    User,
    UserRole,
    db,
)
from expenseflow.services.approval_ledger import ApprovalLedger, approval_ledger
from expenseflow.services.directory import OrgDirectory, org_directory
from expenseflow.services.notification_service import NotificationService, notification_service
from expenseflow.services.rule_store import ApprovalRuleRepository, rule_repository
from expenseflow.services.status_projector import StatusProjector, set_expense_status_if, status_projector

logger = logging.getLogger(__name__)

OUTCOMES = {
    "approved": ApprovalRequestStatus.APPROVED,
    "approve": ApprovalRequestStatus.APPROVED,
    "rejected": ApprovalRequestStatus.REJECTED,
    "reject": ApprovalRequestStatus.REJECTED,
}


class DecisionResult(NamedTuple):
    approval: ApprovalRequest
    expense: Expense
    activated: List[ApprovalRequest]
    final_status: Optional[ExpenseStatus]


class _DecisionConflict(Exception):
    """The compare-and-set on the approval request matched no row."""


def parse_outcome(value: Any) -> ApprovalRequestStatus:
    if isinstance(value, ApprovalRequestStatus) and value != ApprovalRequestStatus.PENDING:
        return value
    outcome = OUTCOMES.get(str(value or "").strip().lower())
    if outcome is None:
        raise ValidationFailed('Invalid action. Must be "approved" or "rejected".')
    return outcome


class WorkflowEngine:
    def __init__(
        self,
        rules: ApprovalRuleRepository = rule_repository,
        ledger: ApprovalLedger = approval_ledger,
        projector: StatusProjector = status_projector,
        notifier: NotificationService = notification_service,
        directory: OrgDirectory = org_directory,
    ):
        self.rules = rules
        self.ledger = ledger
        self.projector = projector
        self.notifier = notifier
        self.directory = directory

    # Submission -------------------------------------------------------------

    def submit_expense(self, expense_id: int, actor: User) -> List[ApprovalRequest]:
        """Move a draft expense to SUBMITTED and create its first approval requests.

        A submitted expense that stalled without approvers (misconfiguration)
        may be submitted again once a manager or rule exists.
        """
        expense = self._load_expense(expense_id, actor)
        if expense.submitter_user_id != actor.id and actor.role != UserRole.ADMIN:
            raise PermissionDenied()

        # Serialize submits of one expense so a stalled resubmit re-checks the ledger under the lock.
        expense = (
            Expense.query.filter_by(id=expense.id).with_for_update(of=Expense).populate_existing().one()
        )
        if expense.status == ExpenseStatus.DRAFT:
            if not set_expense_status_if(expense.id, ExpenseStatus.DRAFT, ExpenseStatus.SUBMITTED):
                raise AlreadyProcessed("Expense already submitted.")
            expense.submitted_at = datetime.now(timezone.utc)
        elif expense.status != ExpenseStatus.SUBMITTED or self.ledger.count_for_expense(expense.id):
            raise AlreadyProcessed("Expense already submitted.")

        AuditLog.record("expense", expense.id, "submitted", user_id=actor.id)
        try:
            created = self.initiate_approvals(expense)
            db.session.commit()
        except NoApproverConfigured:
            AuditLog.record("expense", expense.id, "stalled_no_approver", user_id=actor.id)
            db.session.commit()
            raise
        except IntegrityError:
            db.session.rollback()
            logger.warning(f"Concurrent submit of expense {expense_id} lost the race")
            raise AlreadyProcessed("Expense already submitted.") from None
        except Exception:
            db.session.rollback()
            raise

        summary = expense.summary()
        for approval in created:
            self.notifier.notify_approver_assigned(approval.approver_user_id, summary)
        return created

    def initiate_approvals(self, expense: Expense) -> List[ApprovalRequest]:
        """Create the pending requests for a freshly submitted expense (caller commits)."""
        if expense.status != ExpenseStatus.SUBMITTED:
            raise ValidationFailed("Only submitted expenses can be routed for approval.")
        if self.ledger.count_for_expense(expense.id):
            raise AlreadyProcessed("Approvals were already initiated for this expense.")

        steps, rule = self.resolve_route(expense)
        if not steps:
            logger.warning(
                f"No approver configured for expense {expense.id} (employee {expense.submitter_user_id})"
            )
            raise NoApproverConfigured()

        is_sequential = bool(rule and rule.approvers_sequence)
        route = ApprovalRoute.query.filter_by(expense_id=expense.id).first()
        if route is None:
            route = ApprovalRoute(expense_id=expense.id)
            db.session.add(route)
        route.rule_id = rule.id if rule else None
        route.steps = steps
        route.is_sequential = is_sequential
        route.minimum_approval_percentage = rule.minimum_approval_percentage if rule else 100

        to_activate = steps[:1] if is_sequential else steps
        created = [
            self.ledger.create_pending(expense.id, step["approver_id"], step["position"], step["required"])
            for step in to_activate
        ]
        logger.info(
            f"Expense {expense.id} routed to {[step['approver_id'] for step in steps]} "
            f"({'sequential' if is_sequential else 'parallel'}), {len(created)} request(s) created"
        )
        return created

    def resolve_route(self, expense: Expense) -> Tuple[List[Dict[str, Any]], Optional[ApprovalRule]]:
        """Ordered approver steps for the expense plus the rule they came from."""
        employee_id = expense.submitter_user_id
        rule = self.rules.get_by_employee(employee_id)
        manager_id = rule.manager_id if rule and rule.manager_id and self._can_act(rule.manager_id) else None
        manager_id = manager_id or self.directory.manager_of(employee_id)
        if manager_id == employee_id:
            manager_id = None

        if rule is None:
            if manager_id is None:
                return [], None
            return [{"approver_id": manager_id, "required": True, "position": 1}], None

        steps: List[Dict[str, Any]] = []
        if rule.is_manager_approver and manager_id is not None:
            steps.append({"approver_id": manager_id, "required": True, "position": 0})

        for spec in sorted(rule.approvers, key=lambda item: item.sequence_order):
            if spec.approver_user_id == employee_id or not self._can_act(spec.approver_user_id):
                continue
            existing = next((step for step in steps if step["approver_id"] == spec.approver_user_id), None)
            if existing is not None:
                existing["required"] = existing["required"] or spec.required
                continue
            steps.append(
                {
                    "approver_id": spec.approver_user_id,
                    "required": spec.required,
                    "position": spec.sequence_order,
                }
            )
        return steps, rule

    def _can_act(self, user_id: int) -> bool:
        """Users deactivated or demoted after a rule was saved drop out of new routes."""
        user = self.directory.get_user(user_id)
        return user is not None and user.is_active and user.can_approve

    # Decisions --------------------------------------------------------------

    def decide(
        self, approval_request_id: int, actor: User, outcome: Any, comments: Optional[str] = None
    ) -> DecisionResult:
        return self.record_decision(approval_request_id, actor.id, parse_outcome(outcome), comments)

    def record_decision(
        self,
        approval_request_id: int,
        approver_id: int,
        outcome: ApprovalRequestStatus,
        comments: Optional[str] = None,
    ) -> DecisionResult:
        """Apply one approver decision, retrying a lost compare-and-set before giving up."""
        outcome = parse_outcome(outcome)
        attempts = 1 + max(0, int(current_app.config.get("DECISION_RETRY_ATTEMPTS", 1)))

        for attempt in range(1, attempts + 1):
            try:
                result = self._apply_decision(approval_request_id, approver_id, outcome, comments)
                db.session.commit()
                break
            except (_DecisionConflict, OperationalError) as e:
                db.session.rollback()
                logger.warning(
                    f"Decision on approval request {approval_request_id} conflicted "
                    f"(attempt {attempt}/{attempts}): {e.__class__.__name__}"
                )
                if attempt == attempts:
                    raise AlreadyProcessed() from None
            except WorkflowError:
                db.session.rollback()
                raise

        logger.info(
            f"Approval request {approval_request_id} {outcome.value} by user {approver_id}; "
            f"expense {result.expense.id} is {result.expense.status.value}"
        )
        self._notify_after_decision(result, approver_id, comments)
        return result

    def _apply_decision(
        self,
        approval_request_id: int,
        approver_id: int,
        outcome: ApprovalRequestStatus,
        comments: Optional[str],
    ) -> DecisionResult:
        approval = self.ledger.get(approval_request_id)
        if approval is None or approval.approver_user_id != approver_id:
            raise NotFound("Approval request not found.")

        # Serialize decisions per expense before reading anything we decide on.
        expense = (
            Expense.query.filter_by(id=approval.expense_id)
            .with_for_update(of=Expense)
            .populate_existing()
            .one()
        )
        db.session.refresh(approval)
        if approval.status != ApprovalRequestStatus.PENDING:
            raise AlreadyProcessed()
        if expense.status != ExpenseStatus.SUBMITTED:
            raise AlreadyProcessed("Expense already has a final decision.")

        if not self.ledger.update_if_status(
            approval.id, ApprovalRequestStatus.PENDING, outcome, comments
        ):
            raise _DecisionConflict()
        AuditLog.record(
            "approval_request",
            approval.id,
            outcome.value.lower(),
            user_id=approver_id,
            expense_id=expense.id,
            comments=comments,
        )

        activated: List[ApprovalRequest] = []
        final_status: Optional[ExpenseStatus] = None
        if outcome == ApprovalRequestStatus.REJECTED:
            if set_expense_status_if(expense.id, ExpenseStatus.SUBMITTED, ExpenseStatus.REJECTED):
                final_status = ExpenseStatus.REJECTED
                AuditLog.record("expense", expense.id, "rejected", user_id=approver_id)
        else:
            route = expense.route
            next_step = route.step_after(approver_id) if route and route.is_sequential else None
            if next_step is not None:
                activated.append(
                    self.ledger.create_pending(
                        expense.id, next_step["approver_id"], next_step["position"], next_step["required"]
                    )
                )
                logger.info(f"Expense {expense.id} advanced to approver {next_step['approver_id']}")
            else:
                final_status = self.projector.project(expense.id)

        return DecisionResult(approval, expense, activated, final_status)

    def _notify_after_decision(self, result: DecisionResult, approver_id: int, comments: Optional[str]) -> None:
        summary = result.expense.summary()
        for approval in result.activated:
            self.notifier.notify_approver_assigned(approval.approver_user_id, summary)
        if result.final_status is not None:
            self.notifier.notify_employee_decision(
                result.expense.submitter_user_id,
                result.final_status.value.lower(),
                self.directory.display_name(approver_id),
                comments,
                summary,
            )

    # Queries ----------------------------------------------------------------

    def list_pending_approvals(self, approver_id: int) -> List[Dict[str, Any]]:
        """Pending requests for an approver with a read-only expense summary."""
        return [
            {
                "id": approval.id,
                "status": approval.status.value,
                "step_number": approval.step_number,
                "is_required": approval.is_required,
                "created_at": approval.created_at.isoformat() if approval.created_at else None,
                "expense": approval.expense.summary(),
            }
            for approval in self.ledger.list_pending_for_approver(approver_id)
        ]

    def get_approval_history(self, expense_id: int, actor: User) -> List[Dict[str, Any]]:
        """Ledger rows for an expense in route order, for audit display."""
        expense = self._load_expense(expense_id, actor)
        if actor.role == UserRole.EMPLOYEE and expense.submitter_user_id != actor.id:
            raise PermissionDenied()
        return [approval.to_dict() for approval in self.ledger.list_for_expense(expense.id)]

    def _load_expense(self, expense_id: int, actor: User) -> Expense:
        expense = db.session.get(Expense, expense_id)
        if expense is None:
            raise NotFound("Expense not found.")
        if expense.company_id != actor.company_id:
            raise PermissionDenied()
        return expense


workflow_engine = WorkflowEngine()
