from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the response envelope:
    - validation_error (400)
    - invalid_login_url (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - tenant_not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500, 502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    @classmethod
    def for_field(cls, path: str, message: str) -> "ValidationError":
        return cls(message, detail={"errors": [{"path": [path], "message": message}]})


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class InvalidLoginUrlError(ServiceError):
    """Login attempted without a tenant subdomain (400)."""
    status_code = 400
    error_code = "invalid_login_url"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Login rejected; the message never says which check failed."""
    pass


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TenantNotFoundError(NotFoundError):
    """No active tenant for the requested subdomain (404)."""
    error_code = "tenant_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateResourceError(ConflictError):
    """Unique value already taken; ``detail["path"]`` names the input field."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message, detail={"path": path})
        self.path = path


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotificationDeliveryError(ServerError):
    """Outbound email could not be delivered (502)."""
    status_code = 502


class StoreUnavailableError(ServiceError):
    """Backing store unreachable or timed out (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidLoginUrlError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "TenantNotFoundError",
    "ConflictError",
    "DuplicateResourceError",
    "RateLimitedError",
    "ServerError",
    "NotificationDeliveryError",
    "StoreUnavailableError",
]
