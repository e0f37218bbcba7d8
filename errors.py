"""Service-level error taxonomy rendered into the ``{success, message}`` envelope."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = dict(details or {})


class InputValidationError(ServiceError, ValueError):
    status_code = 400


class AuthError(ServiceError):
    status_code = 401


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class PreconditionError(ServiceError):
    status_code = 400


class PrerequisitesNotMetError(PreconditionError):
    """Raised when required prerequisites have not been completed."""

    status_code = 403

    def __init__(self, missing, message: str = "Prerequisites not met") -> None:
        missing_ids = list(missing)
        super().__init__(message, details={"missingPrerequisites": missing_ids})
        self.missing = missing_ids


class NoActiveAttemptError(PreconditionError):
    def __init__(self, message: str = "No active attempt found") -> None:
        super().__init__(message)


class UpstreamError(ServiceError):
    """Raised when the external text-generation service fails."""

    status_code = 502
