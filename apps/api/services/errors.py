"""Typed ledger errors with stable client-facing codes."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base error carrying a stable code plus structured metadata for clients."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, **metadata: Any):
        super().__init__(message)
        self.message = message
        self.metadata: Dict[str, Any] = {key: value for key, value in metadata.items() if value is not None}

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.metadata}


class UnauthenticatedError(LedgerError):
    code = "unauthenticated"
    status_code = 401


class InvalidArgumentError(LedgerError):
    code = "invalid_argument"
    status_code = 422


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class RateLimitedError(LedgerError):
    """Generation gate rejection: cooldown, concurrent_limit or insufficient_credits."""

    code = "resource_exhausted"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        retry_after_seconds: Optional[int] = None,
        current_credits: Optional[int] = None,
    ):
        super().__init__(
            message,
            reason=reason,
            retry_after_seconds=retry_after_seconds,
            current_credits=current_credits,
        )
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds
        self.current_credits = current_credits


class FailedPreconditionError(LedgerError):
    code = "failed_precondition"
    status_code = 412

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message, reason=reason)
        self.reason = reason


class AlreadyExistsError(LedgerError):
    code = "already_exists"
    status_code = 409


class InternalError(LedgerError):
    code = "internal"
    status_code = 500


class TransactionConflictError(InternalError):
    """Optimistic transaction retries were exhausted."""


class ServiceUnavailableError(InternalError):
    """A backing service (e.g. the job queue) is down."""

    status_code = 503


class BillingOracleError(Exception):
    """Billing oracle unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationError(InternalError):
    """Image generation backend failed or returned no image."""
