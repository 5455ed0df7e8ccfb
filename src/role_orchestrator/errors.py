"""Error taxonomy shared by the queue, runner, policy checks, and HTTP surface.

Each error carries a stable ``kind`` and the HTTP status the API maps it to.
A lost claim race is not an error: ``TaskQueue.claim_next`` returns ``None``.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for errors that are safe to show to callers."""

    kind = "orchestrator_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConfigurationError(OrchestratorError):
    """Fatal misconfiguration, e.g. a role without a registered executor."""

    kind = "configuration_error"
    status_code = 500


class ExecutionError(OrchestratorError):
    """An executor reported failure or raised; the task may be requeued."""

    kind = "execution_error"
    status_code = 500


class PermissionDenied(OrchestratorError):
    kind = "permission_denied"
    status_code = 403


class ApprovalRequired(OrchestratorError):
    """Action is permitted but needs superuser sign-off first."""

    kind = "approval_required"
    status_code = 403


class AuthenticationError(OrchestratorError):
    kind = "authentication_error"
    status_code = 401


class NotFoundError(OrchestratorError):
    kind = "not_found"
    status_code = 404


class InvalidRequest(OrchestratorError):
    kind = "invalid_request"
    status_code = 400


class TickInProgress(OrchestratorError):
    kind = "tick_in_progress"
    status_code = 409


class StorageUnavailable(OrchestratorError):
    """Backing store could not be reached or rejected the statement."""

    kind = "storage_unavailable"
    status_code = 503
