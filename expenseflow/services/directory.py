"""Org directory lookups used by the approval engine."""
from __future__ import annotations

from typing import Optional

from expenseflow.models import EmployeeProfile, User, db


class OrgDirectory:
    def get_user(self, user_id: int) -> Optional[User]:
        return db.session.get(User, user_id)

    def manager_of(self, employee_id: int) -> Optional[int]:
        """Return the employee's direct manager id when that manager can act on approvals."""
        profile = EmployeeProfile.query.filter_by(user_id=employee_id).first()
        if profile is None or profile.manager_id is None:
            return None
        manager = db.session.get(User, profile.manager_id)
        if manager is None or not (manager.is_active and manager.can_approve):
            return None
        return manager.id

    def display_name(self, user_id: int) -> str:
        user = self.get_user(user_id)
        return user.full_name if user else "an approver"


org_directory = OrgDirectory()
