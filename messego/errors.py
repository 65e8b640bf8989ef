"""
Application error taxonomy.
Every error carries the HTTP status it maps to; handlers in main.py render
them into the standard response envelope.
"""
from typing import Dict, Optional


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Authentication failed"


class TokenExpiredError(AuthError):
    default_message = "Token has expired"


class MalformedTokenError(AuthError):
    default_message = "Invalid token"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Forbidden"


class PartialOwnershipError(ForbiddenError):
    default_message = "Some messages not found or not owned by you"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class ConfigError(AppError):
    default_message = "Server configuration error"


class UpstreamError(AppError):
    default_message = "Upstream service error"


class UploadFailedError(UpstreamError):
    default_message = "Image upload failed"


class ServiceUnavailableError(AppError):
    status_code = 503
    default_message = "Service temporarily unavailable"


class MediaTimeoutError(ServiceUnavailableError):
    default_message = "Media storage timed out"


class InternalError(AppError):
    pass
