"""
Error taxonomy for pass, gate and safety operations.

Every error carries the HTTP status the API layer answers with, plus
optional extra fields merged into the JSON body.
"""
from typing import Any, Dict, Optional


class PassError(Exception):
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message}
        body.update(self.extra)
        return body


class ValidationError(PassError):
    status_code = 400


class NotFoundError(PassError):
    status_code = 404


class AuthorizationError(PassError):
    status_code = 403


class InvalidStateError(PassError):
    status_code = 400

    def __init__(self, status: Any, message: Optional[str] = None):
        value = getattr(status, "value", status)
        super().__init__(message or f"Pass status: {value}", status=value)
        self.status = value


class NotYetValidError(PassError):
    status_code = 400


class ExpiredError(PassError):
    status_code = 400


class AlreadyUsedError(InvalidStateError):
    """The pass already completed its exit/entry round trip."""


class ConflictError(PassError):
    status_code = 409
