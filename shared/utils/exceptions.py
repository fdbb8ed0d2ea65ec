"""
shared/utils/exceptions.py
Domain error taxonomy. Raised by the dispatch layer, rendered to JSON by
the handlers registered in main.py. 4xx errors are terminal for the
request; TransientError (503) tells the caller to retry the whole request.
"""

from typing import List, Optional


class DispatchError(Exception):
    """Base class for every caller-facing domain error."""

    status_code: int = 400
    code: str = "error"
    default_detail: str = "Request failed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class ValidationError(DispatchError):
    """Missing or malformed input. Carries one entry per offending field."""

    status_code = 422
    code = "validation_error"
    default_detail = "Validation failed"

    def __init__(self, errors: List[dict], detail: Optional[str] = None):
        self.errors = errors
        super().__init__(detail)

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}])

    def to_dict(self) -> dict:
        return {**super().to_dict(), "errors": self.errors}


class AuthorizationError(DispatchError):
    """
    Wrong role or not a party to the resource.
    The detail is always generic so resource existence does not leak.
    """

    status_code = 403
    code = "not_authorized"
    default_detail = "Not authorized"

    def __init__(self, reason: Optional[str] = None):
        # reason is for logs only
        self.reason = reason
        super().__init__(None)


class NotFoundError(DispatchError):
    status_code = 404
    code = "not_found"
    default_detail = "Resource not found"


class ConflictError(DispatchError):
    """Request is well-formed but the current state forbids it."""

    status_code = 409
    code = "conflict"
    default_detail = "Conflict with current state"


class TransientError(DispatchError):
    status_code = 503
    code = "temporarily_unavailable"
    default_detail = "Service temporarily unavailable, please retry"
