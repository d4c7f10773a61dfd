"""
Error kinds raised by the stores and the matching engine.

Each one knows the HTTP status it maps to; main.py turns them into the
``{"success": false, "message": ..., "errors": ...}`` envelope.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, errors: Optional[dict] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Access denied. No token provided"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class InternalError(AppError):
    status_code = 500


def field_errors(error_list) -> dict:
    """Group pydantic error entries by the field they belong to."""
    errors: dict = {}
    for err in error_list:
        loc = [str(part) for part in err["loc"] if part not in ("body", "query", "path")]
        key = ".".join(loc) or "_"
        errors.setdefault(key, []).append(err["msg"])
    return errors
