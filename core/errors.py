"""
core/errors.py -- Service error taxonomy.

Every failure a client can observe is one of these classes. Each carries a
stable machine-readable code and the HTTP status it maps to; api/main.py turns
them into the shared {"error": {"code", "message"}} envelope. Messages must be
safe to show to clients -- internal detail belongs in the log, not here.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors mapped 1:1 onto an HTTP status."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    code = "unauthorized"


class AuthorizationError(ServiceError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    code = "conflict"


class RateLimitError(ServiceError):
    """Raised when a rate-limit policy rejects a request.

    retry_after is the number of whole seconds until the current window
    resets. It is sent back as the Retry-After header; the server never
    retries on the caller's behalf.
    """

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests, please try again later.", retry_after: int = 1) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UnexpectedError(ServiceError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An unexpected error occurred.") -> None:
        super().__init__(message)
