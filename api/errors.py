"""
api/errors.py -- Error taxonomy for the HTTP layer.

Every error a route raises is an ApiError subclass. The exception handlers in
api/main.py render each one as the standard envelope:

    {"success": false, "message": "...", "errors": {"field": "msg"}}

  ValidationError      400  malformed input (also RequestValidationError)
  AuthenticationError  401  missing/invalid credentials or token
  AuthorizationError   403  authenticated but not allowed (incl. unverified login)
  NotFound             404
  Conflict             409  duplicate email
  RateLimited          429  carries retry_after seconds -> Retry-After header
  InternalError        500  database failure or anything unexpected; details go
                            to the log, never the client
"""

from __future__ import annotations

from typing import Any


class ApiError(Exception):
    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        errors: dict[str, str] | None = None,
        **extra: Any,
    ) -> None:
        self.message = message or self.default_message
        self.errors = errors
        # Extra top-level envelope fields, e.g. requires_verification=True.
        self.extra = extra
        super().__init__(self.message)


class ValidationError(ApiError):
    status_code = 400
    default_message = "Validation failed."


class AuthenticationError(ApiError):
    status_code = 401
    default_message = "Not authenticated."


class AuthorizationError(ApiError):
    status_code = 403
    default_message = "You are not allowed to do that."


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found."


class Conflict(ApiError):
    status_code = 409
    default_message = "Conflict."


class RateLimited(ApiError):
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InternalError(ApiError):
    status_code = 500


def _label(field: str) -> str:
    return field.replace("_", " ").capitalize()


def validation_errors(errors: list[dict]) -> dict[str, str]:
    """Flatten pydantic error dicts into {field: message}, first error per field wins.

    "missing" errors read "<Field> is required"; custom validator messages lose
    pydantic's "Value error, " prefix.
    """
    result: dict[str, str] = {}
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[0] if loc else "body"
        if field in result:
            continue
        if error.get("type") == "missing":
            message = f"{_label(field)} is required"
        else:
            message = str(error.get("msg", "Invalid value"))
            message = message.removeprefix("Value error, ")
        result[field] = message
    return result
