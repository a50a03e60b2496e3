"""General helper utilities."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict

from flask import jsonify, request
from flask_login import current_user

from expenseflow.errors import ValidationFailed
from expenseflow.models import UserRole

JsonView = Callable[..., Any]


def json_response(payload: Any, status: int = 200):
    """Return a JSON response with status code."""
    return jsonify(payload), status


def get_payload() -> Dict[str, Any]:
    """Read the request body as JSON, falling back to form fields."""
    if request.is_json:
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ValidationFailed("Request body must be a JSON object.")
        return payload
    return request.form.to_dict()


def role_required(*roles: UserRole):
    """Restrict a route to one or more roles."""
    def decorator(view_func: JsonView) -> JsonView:
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return json_response({"error": "Authentication required."}, status=401)
            if current_user.role not in roles:
                return json_response({"error": "Insufficient permissions."}, status=403)
            return view_func(*args, **kwargs)

        return wrapped

    return decorator
