"""Application data models exposed for easy imports."""
from expenseflow import db  # noqa: F401
from .company import Company  # noqa: F401
from .user import APPROVER_ROLES, User, UserRole, EmployeeProfile  # noqa: F401
from .expense import Expense, ExpenseStatus  # noqa: F401
from .approval import (
    ApprovalRequest,
    ApprovalRequestStatus,
    ApprovalRoute,
    ApprovalRule,
    RuleApprover,
)  # noqa: F401
from .notification import Notification, NotificationType  # noqa: F401
from .audit import AuditLog  # noqa: F401

__all__ = [
    "db",
    "Company",
    "User",
    "UserRole",
    "APPROVER_ROLES",
    "EmployeeProfile",
    "Expense",
    "ExpenseStatus",
    "ApprovalRequest",
    "ApprovalRequestStatus",
    "ApprovalRoute",
    "ApprovalRule",
    "RuleApprover",
    "Notification",
    "NotificationType",
    "AuditLog",
]
