from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from expenseflow import create_app, db
from expenseflow.models import (
    ApprovalRule,
    Company,
    EmployeeProfile,
    Expense,
    ExpenseStatus,
    RuleApprover,
    User,
    UserRole,
)

PASSWORD = "correct-horse-battery"


@pytest.fixture
def app():
    app = create_app("testing")
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(company: Company, first_name: str, role: UserRole, manager: User | None = None) -> User:
    user = User(
        first_name=first_name,
        last_name="Tester",
        email=f"{first_name.lower()}@{company.name.lower()}.test",
        role=role,
        company_id=company.id,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.flush()
    db.session.add(EmployeeProfile(user_id=user.id, manager_id=manager.id if manager else None))
    db.session.commit()
    return user


def build_org(name: str = "Acme") -> SimpleNamespace:
    company = Company(name=name, country="United States", currency_code="USD")
    db.session.add(company)
    db.session.commit()

    admin = make_user(company, f"{name}Admin", UserRole.ADMIN)
    manager = make_user(company, f"{name}Manager", UserRole.MANAGER)
    finance = make_user(company, f"{name}Finance", UserRole.MANAGER)
    director = make_user(company, f"{name}Director", UserRole.MANAGER)
    employee = make_user(company, f"{name}Employee", UserRole.EMPLOYEE, manager=manager)
    loner = make_user(company, f"{name}Loner", UserRole.EMPLOYEE)
    return SimpleNamespace(
        company=company,
        admin=admin,
        manager=manager,
        finance=finance,
        director=director,
        employee=employee,
        loner=loner,
    )


def make_expense(employee: User, amount: str = "500.00", category: str = "Travel") -> Expense:
    expense = Expense(
        company_id=employee.company_id,
        submitter_user_id=employee.id,
        amount_original=Decimal(amount),
        currency_original="USD",
        amount_in_company_currency=Decimal(amount),
        category=category,
        description="Client visit",
        date_spent=date(2025, 9, 15),
        status=ExpenseStatus.DRAFT,
    )
    db.session.add(expense)
    db.session.commit()
    return expense


def make_rule(
    employee: User,
    approvers: list[tuple[User, bool]],
    sequential: bool = False,
    manager_approver: bool = False,
    percentage: int = 100,
) -> ApprovalRule:
    """Insert a rule directly; ``approvers`` is a list of ``(user, required)`` in order."""
    rule = ApprovalRule(
        company_id=employee.company_id,
        employee_id=employee.id,
        description="Test rule",
        is_manager_approver=manager_approver,
        approvers_sequence=sequential,
        minimum_approval_percentage=percentage,
    )
    for order, (user, required) in enumerate(approvers, start=1):
        rule.approvers.append(RuleApprover(approver_user_id=user.id, required=required, sequence_order=order))
    db.session.add(rule)
    db.session.commit()
    return rule


@pytest.fixture
def org(ctx):
    return build_org()
