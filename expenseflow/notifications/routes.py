"""Notification inbox routes."""
from __future__ import annotations

from typing import Any

from flask import request
from flask_login import current_user, login_required

from expenseflow.errors import ValidationFailed
from expenseflow.services.notification_service import notification_service
from expenseflow.utils.helpers import get_payload, json_response

from . import notifications_bp


@notifications_bp.route("", methods=["GET"])
@login_required
def list_notifications() -> Any:
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    notifications = notification_service.list_for_user(current_user.id, limit=limit, offset=offset)
    return json_response(
        {
            "notifications": [notification.to_dict() for notification in notifications],
            "unread_count": notification_service.unread_count(current_user.id),
        }
    )


@notifications_bp.route("/read", methods=["POST"])
@login_required
def mark_read() -> Any:
    """Mark the listed notification ids read, or all of them when no ids are given."""
    ids = get_payload().get("ids")
    if ids is not None and (
        not isinstance(ids, list) or not all(isinstance(item, int) and not isinstance(item, bool) for item in ids)
    ):
        raise ValidationFailed("'ids' must be a list of notification ids.")
    updated = notification_service.mark_read(current_user.id, ids)
    return json_response({"updated": updated})


@notifications_bp.route("/<int:notification_id>", methods=["DELETE"])
@login_required
def delete_notification(notification_id: int) -> Any:
    notification_service.delete(current_user.id, notification_id)
    return json_response({"message": "Notification deleted."})
