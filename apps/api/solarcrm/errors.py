from __future__ import annotations

from typing import Any


class TimelineError(Exception):
    """Base class for every error the lead timeline surfaces to callers.

    ``code`` and ``status_code`` map one-to-one onto the HTTP error envelope; ``details``
    carries the machine-readable specifics (blocking step names, missing requirements, ...).
    """

    code = "timeline_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_log_fields(self) -> dict[str, Any]:
        return {"outcome": self.code, "error": self.message}


class RoleNotPermitted(TimelineError):
    code = "role_not_permitted"
    status_code = 403


class DependencyNotSatisfied(TimelineError):
    code = "dependency_not_satisfied"
    status_code = 422

    def __init__(self, message: str, *, blocking_steps: list[str]) -> None:
        super().__init__(message, details={"blocking_steps": blocking_steps})
        self.blocking_steps = blocking_steps


class ValidationFailed(TimelineError):
    code = "validation_failed"
    status_code = 422

    def __init__(self, message: str, *, missing: list[str]) -> None:
        super().__init__(message, details={"missing": missing})
        self.missing = missing


class ConflictError(TimelineError):
    code = "conflict"
    status_code = 409
    retryable = True


class OverrideFailed(TimelineError):
    code = "override_failed"
    status_code = 409

    def __init__(self, message: str, *, step_id: str | None, cause: TimelineError | None) -> None:
        details: dict[str, Any] = {"step_id": step_id}
        if cause is not None:
            details["cause"] = {"code": cause.code, "message": cause.message, "details": cause.details}
        super().__init__(message, details=details)
        self.step_id = step_id
        self.cause = cause


class ProjectClosedError(TimelineError):
    code = "project_closed"
    status_code = 423


class InvalidTransition(TimelineError):
    code = "invalid_transition"
    status_code = 409


class NotFoundError(TimelineError):
    code = "not_found"
    status_code = 404


class InvariantViolation(TimelineError):
    code = "invariant_violation"
    status_code = 500
