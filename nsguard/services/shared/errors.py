"""
nsguard error taxonomy.

Write-time errors reject the whole write and name the offending object + field.
Evaluation-time errors (identity, cancellation) are converted to Deny by the
evaluators and never surface to callers as exceptions.
"""

from typing import Any, Optional


class NsGuardError(Exception):
    code = "ErrNsGuard"

    def __init__(self, message: str, *, object_ref: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.message    = message
        self.object_ref = object_ref
        self.field      = field

    def to_dict(self) -> dict[str, Any]:
        return {
            "code":    self.code,
            "message": self.message,
            "object":  self.object_ref,
            "field":   self.field,
        }


class DanglingReferenceError(NsGuardError):
    code = "ErrDanglingReference"


class MalformedSelectorError(NsGuardError):
    code = "ErrMalformedSelector"


class InvalidObjectError(NsGuardError):
    code = "ErrInvalidObject"


class InvalidTargetError(NsGuardError):
    code = "ErrInvalidTarget"


class InvalidDurationError(NsGuardError):
    code = "ErrInvalidDuration"


class GrantNotFoundError(NsGuardError):
    code = "ErrGrantNotFound"


class SelfApprovalError(NsGuardError):
    code = "ErrSelfApproval"


class IdentityTimeoutError(NsGuardError):
    code = "ErrIdentityTimeout"


class IdentityUnavailableError(NsGuardError):
    code = "ErrIdentityUnavailable"


class CanceledError(NsGuardError):
    code = "ErrCanceled"
