"""Company (tenant) model."""
from __future__ import annotations

from expenseflow import db


class Company(db.Model):
    """Tenant boundary: users, expenses and approval rules never cross companies."""

    __tablename__ = "companies"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    country = db.Column(db.String(120), nullable=True)
    # Expenses are converted into this currency for approver display; unset means DEFAULT_CURRENCY.
    currency_code = db.Column(db.String(3), nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    users = db.relationship("User", back_populates="company", lazy="dynamic")
    expenses = db.relationship("Expense", back_populates="company", lazy="dynamic")
    approval_rules = db.relationship("ApprovalRule", back_populates="company", lazy="dynamic")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "currency_code": self.currency_code,
        }

    def __repr__(self) -> str:
        return f"<Company {self.name} ({self.currency_code})>"
