"""Workflow error taxonomy and its JSON error handler."""
from __future__ import annotations

import logging

from flask import Flask

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class NotFound(WorkflowError):
    status_code = 404
    default_message = "Resource not found."


class AlreadyProcessed(WorkflowError):
    status_code = 409
    default_message = "Approval request already processed."


class NoApproverConfigured(WorkflowError):
    status_code = 422
    default_message = "No approver could be resolved for this expense. Ask an admin to assign a manager or approval rule."


class PermissionDenied(WorkflowError):
    status_code = 403
    default_message = "Permission denied."


class ValidationFailed(WorkflowError):
    status_code = 400
    default_message = "Invalid request."


def register_error_handlers(app: Flask) -> None:
    """Return workflow errors as JSON payloads instead of HTML error pages."""
    from expenseflow.utils.helpers import json_response

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(error: WorkflowError):
        logger.info(f"{error.__class__.__name__}: {error.message}")
        return json_response(error.to_dict(), status=error.status_code)
