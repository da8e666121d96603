"""
Typed failures raised by the lifecycle engine.

Business-rule failures (everything except InvariantViolation) are expected and
carry text that can be shown to the user as-is. InvariantViolation means a
logic or concurrency bug and is reported as a server error.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Reason:
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class LifecycleError(Exception):
    code = "LIFECYCLE_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationFailed(LifecycleError):
    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, reasons: list[Reason]) -> None:
        self.reasons = list(reasons)
        super().__init__("; ".join(r.message for r in self.reasons) or "Validation failed")

    @property
    def reason_codes(self) -> list[str]:
        return [r.code for r in self.reasons]

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["reasons"] = [r.to_dict() for r in self.reasons]
        return d


class EditLocked(LifecycleError):
    code = "EDIT_LOCKED"
    http_status = 409

    def __init__(self, document_id: str, issue_status: str) -> None:
        if issue_status == "superseded":
            msg = "This document has been superseded by a newer version and cannot be edited."
        else:
            msg = "This document has been issued and is locked. To make changes, create a new version."
        super().__init__(msg)
        self.document_id = document_id
        self.issue_status = issue_status


class PermissionDenied(LifecycleError):
    code = "PERMISSION_DENIED"
    http_status = 403


class ActionTerminal(LifecycleError):
    code = "ACTION_TERMINAL"
    http_status = 409

    def __init__(self, action_id: str) -> None:
        super().__init__(
            "Closed actions cannot be reopened. Contact an administrator if this action needs to be reopened."
        )
        self.action_id = action_id


class InvariantViolation(LifecycleError):
    code = "INVARIANT_VIOLATION"
    http_status = 500


class NotFound(LifecycleError):
    code = "NOT_FOUND"
    http_status = 404


class TransitionNotAllowed(LifecycleError):
    code = "TRANSITION_NOT_ALLOWED"
    http_status = 409


class AuditLogImmutable(LifecycleError):
    code = "AUDIT_LOG_IMMUTABLE"
    http_status = 500
