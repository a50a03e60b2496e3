"""Session authentication routes.

Account management lives outside this service; these endpoints only open
and close a Flask-Login session for existing users.
"""
from __future__ import annotations

from typing import Any

from flask_login import current_user, login_required, login_user, logout_user

from expenseflow.models import User
from expenseflow.utils.helpers import get_payload, json_response

from . import auth_bp


@auth_bp.route("/login", methods=["POST"])
def login() -> Any:
    """Authenticate a user using email/password."""
    payload = get_payload()
    email = str(payload.get("email", "")).lower()
    password = payload.get("password")

    if not email or not password:
        return json_response({"error": "Email and password are required."}, status=400)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return json_response({"error": "Invalid credentials."}, status=401)

    if not user.is_active:
        return json_response({"error": "User account is inactive."}, status=403)

    login_user(user)
    return json_response({"message": "Logged in.", "user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout() -> Any:
    logout_user()
    return json_response({"message": "Logged out."})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me() -> Any:
    return json_response({"user": current_user.to_dict()})
