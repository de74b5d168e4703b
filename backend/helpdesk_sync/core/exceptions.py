"""Custom exceptions for application-specific error handling."""

from __future__ import annotations

from typing import Optional, Dict, Any


class HelpdeskSyncException(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 400,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.status_code = status_code
        self.headers = headers
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class NotFoundError(HelpdeskSyncException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str = "not_found", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="NOT_FOUND", details=details, status_code=404)


class ConflictError(HelpdeskSyncException):
    """Raised when a request conflicts with current state."""

    def __init__(self, message: str = "conflict", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="CONFLICT", details=details, status_code=409)


class BadRequestError(HelpdeskSyncException):
    """Raised when request is invalid."""

    def __init__(self, message: str = "bad_request", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="BAD_REQUEST", details=details, status_code=400)


class ConfigurationError(HelpdeskSyncException):
    """Raised when required settings (credentials, domain) are missing."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code="CONFIGURATION_ERROR", details=details, status_code=500)


# ===== FRESHSERVICE EXCEPTIONS =====


class ExternalAPIError(HelpdeskSyncException):
    """Raised when the Freshservice API answers with an error or cannot be reached."""

    def __init__(
        self,
        resource: str,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        error_code: str = "EXTERNAL_API_ERROR",
        status_code: int = 502,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.resource = resource
        self.upstream_status = upstream_status
        details: Dict[str, Any] = {"resource": resource}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(
            f"Freshservice API error on {resource}: {message}",
            error_code=error_code,
            details=details,
            status_code=status_code,
            headers=headers,
        )

    @property
    def is_server_error(self) -> bool:
        return self.upstream_status is not None and self.upstream_status >= 500


class RateLimitExceeded(ExternalAPIError):
    """Raised when Freshservice keeps answering 429 after every retry."""

    def __init__(self, resource: str, *, attempts: int, retry_after: Optional[int] = None):
        self.attempts = attempts
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        super().__init__(
            resource,
            f"rate limit still exceeded after {attempts} attempts",
            upstream_status=429,
            error_code="RATE_LIMIT",
            status_code=429,
            headers=headers,
        )
        self.details["attempts"] = attempts


# ===== SYNC EXCEPTIONS =====


class SyncCancelled(HelpdeskSyncException):
    """Raised at a suspension point after the running sync was force-stopped."""

    def __init__(self, message: str = "sync_cancelled"):
        super().__init__(message, error_code="SYNC_CANCELLED", status_code=409)


class SyncRunAlreadyFinalized(ConflictError):
    """Raised when a sync run record is finalized a second time."""

    def __init__(self, run_id: int, status: str):
        super().__init__(
            f"Sync run {run_id} is already {status}",
            details={"run_id": run_id, "status": status},
        )
        self.error_code = "SYNC_RUN_FINALIZED"
