from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - invalid_credentials, token_expired, token_invalid, unauthorized (401)
    - account_locked, account_disabled, insufficient_permission,
      system_role_protected, forbidden (403)
    - not_found (404)
    - conflict, duplicate_resource (409)
    - validation_error, menu_hierarchy_invalid (400)
    - server_error (500)
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


class MenuHierarchyError(ValidationError):
    """Menu parent assignment would create a cycle or exceed the depth limit."""
    error_code = "menu_hierarchy_invalid"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the message never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but ``exp`` has passed."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Token is malformed, forged, or of the wrong type."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    """Too many failed attempts; the unlock time is not disclosed."""
    error_code = "account_locked"

    def __init__(self, message: str = "account is locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InsufficientPermissionError(ForbiddenError):
    error_code = "insufficient_permission"

    def __init__(self, message: str = "insufficient permission", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SystemRoleError(ForbiddenError):
    """System roles cannot be deleted or renamed."""
    error_code = "system_role_protected"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateResourceError(ConflictError):
    """A permission with the same name or resource/action pair exists."""
    error_code = "duplicate_resource"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MenuHierarchyError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "AccountLockedError",
    "AccountDisabledError",
    "InsufficientPermissionError",
    "SystemRoleError",
    "NotFoundError",
    "ConflictError",
    "DuplicateResourceError",
    "ServerError",
]
