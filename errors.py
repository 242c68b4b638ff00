"""Exceptions raised by the marketplace services and mapped to JSON errors in main.py."""

from typing import Optional


class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""

    status_code = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(MarketplaceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class BadRequestError(MarketplaceError):
    """Raised for well-formed requests the current state cannot satisfy."""

    status_code = 400
    code = "BAD_REQUEST"


class UnauthorizedError(MarketplaceError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InvalidCredentialsError(UnauthorizedError):
    code = "INVALID_CREDENTIALS"

    def __init__(self):
        super().__init__("Invalid email or password")


class ForbiddenError(MarketplaceError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(MarketplaceError):
    status_code = 409
    code = "CONFLICT"


class ServiceUnavailableError(MarketplaceError):
    status_code = 503
    code = "DATABASE_UNAVAILABLE"
