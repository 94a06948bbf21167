from __future__ import annotations

from enum import Enum
from typing import Optional

from stagekey.logging import get_correlation_id


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the access-control services."""

    INVALID_CREDENTIALS = "ERR_INVALID_CREDENTIALS"
    FORBIDDEN = "ERR_FORBIDDEN"
    SESSION_EXPIRED = "ERR_SESSION_EXPIRED"
    RATE_LIMIT = "ERR_RATE_LIMIT"
    BOOTSTRAP_COMPLETE = "ERR_BOOTSTRAP_COMPLETE"
    VALIDATION = "ERR_VALIDATION"
    REQUEST_NOT_FOUND = "ERR_REQUEST_NOT_FOUND"
    REQUEST_ALREADY_PROCESSED = "ERR_REQUEST_ALREADY_PROCESSED"
    PROVIDER_DOWN = "ERR_PROVIDER_DOWN"
    UNKNOWN = "ERR_UNKNOWN"


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass pins one ``ErrorKind`` so callers can match exhaustively on
    ``exc.kind``. ``status_code`` is the HTTP status an outer layer would map
    the kind to; the core itself never serves HTTP.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}
        self.correlation_id = get_correlation_id()

    @property
    def error_code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict:
        payload = {"code": self.kind.value, "message": self.message}
        if self.detail:
            payload["details"] = self.detail
        if self.correlation_id:
            payload["correlation_id"] = self.correlation_id
        return payload


class InvalidCredentialsError(ServiceError):
    """Unknown username or token digest mismatch (401)."""
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401


class ForbiddenError(ServiceError):
    """Revoked user or insufficient role authority (403)."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class SessionExpiredError(ServiceError):
    """Session unknown, stale, or owner past expiry (401)."""
    kind = ErrorKind.SESSION_EXPIRED
    status_code = 401


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMIT
    status_code = 429

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after_seconds: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        merged = {**(detail or {}), "retry_after_seconds": retry_after_seconds}
        super().__init__(message, detail=merged)
        self.retry_after_seconds = retry_after_seconds


class BootstrapCompleteError(ServiceError):
    """System already bootstrapped (409)."""
    kind = ErrorKind.BOOTSTRAP_COMPLETE
    status_code = 409


class ValidationError(ServiceError):
    """Input validation failed (400)."""
    kind = ErrorKind.VALIDATION
    status_code = 400


class RequestNotFoundError(ServiceError):
    kind = ErrorKind.REQUEST_NOT_FOUND
    status_code = 404


class RequestAlreadyProcessedError(ServiceError):
    kind = ErrorKind.REQUEST_ALREADY_PROCESSED
    status_code = 409


class ProviderDownError(ServiceError):
    """Delivery gateway failure surfaced to a direct caller (502)."""
    kind = ErrorKind.PROVIDER_DOWN
    status_code = 502


class UnknownError(ServiceError):
    kind = ErrorKind.UNKNOWN
    status_code = 500


class NotBootstrappedError(UnknownError):
    """The system has no master admin yet."""
    status_code = 503


class UserNotFoundError(UnknownError):
    status_code = 404


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "SessionExpiredError",
    "RateLimitedError",
    "BootstrapCompleteError",
    "ValidationError",
    "RequestNotFoundError",
    "RequestAlreadyProcessedError",
    "ProviderDownError",
    "UnknownError",
    "NotBootstrappedError",
    "UserNotFoundError",
]
