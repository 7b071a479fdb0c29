# backend/soc_response/core/errors.py
from typing import Any, Optional


class SocResponseError(Exception):
    """Base for every typed error the engine raises to its callers."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SocResponseError):
    """Malformed input; raised before any state change."""

    status_code = 422


class NotFoundError(SocResponseError):
    status_code = 404


class DependencyError(SocResponseError):
    """External collaborator unavailable or timed out."""

    status_code = 503


class ConflictError(SocResponseError):
    status_code = 409


class InternalError(SocResponseError):
    status_code = 500


def validation_error_from_pydantic(exc: Exception, what: str) -> ValidationError:
    """Wrap a pydantic ValidationError into our own taxonomy."""
    errors = getattr(exc, "errors", None)
    details: dict[str, Any] = {}
    if callable(errors):
        details["errors"] = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")}
            for e in errors()
        ]
    return ValidationError(f"Invalid {what}", details=details)
