# stock_hub/errors.py
"""
Error taxonomy shared by services, the fetch orchestrator and the HTTP layer.

Every error carries a stable ``code`` that is returned to API callers.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class StockHubError(Exception):
    code = "STOCK_HUB_ERROR"
    http_status = 500

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


# ============================================================================
# Fetch / automation
# ============================================================================

class RetryableFetchError(StockHubError):
    """Timeout or network failure; the whole fetch may be retried."""
    code = "FETCH_RETRYABLE"
    http_status = 502


class FatalFetchError(StockHubError):
    """Aborts the current fetch attempt (e.g. session lost)."""
    code = "FETCH_FATAL"
    http_status = 502


class AuthRedirectError(FatalFetchError):
    code = "AUTH_REDIRECT"

    def __init__(self, url: str):
        super().__init__(f"Redirected to login page: {url}", details={"url": url})
        self.url = url


class LoginError(FatalFetchError):
    """Credentials rejected or login form missing; not retried."""
    code = "LOGIN_FAILED"


# ============================================================================
# Ledger / canonicalization
# ============================================================================

class ConflictError(StockHubError):
    code = "CONFLICT"
    http_status = 409


class SyncInProgressError(ConflictError):
    code = "SYNC_IN_PROGRESS"

    def __init__(self, source: str):
        super().__init__(f"A fetch for '{source}' is already running", details={"source": source})
        self.source = source


class AliasConflictError(ConflictError):
    code = "ALIAS_CONFLICT"


class DeletionAlreadyPendingError(ConflictError):
    code = "DELETION_ALREADY_PENDING"


class InvariantViolation(StockHubError):
    code = "INVARIANT_VIOLATION"
    http_status = 422


class PartiallyConsumedError(InvariantViolation):
    code = "PURCHASE_PARTIALLY_CONSUMED"


class DeletionNotPendingError(InvariantViolation):
    code = "DELETION_NOT_PENDING"


class NotFoundError(StockHubError):
    code = "NOT_FOUND"
    http_status = 404


class RecordValidationError(StockHubError):
    """Malformed external record rejected at the ingestion boundary."""
    code = "RECORD_INVALID"
    http_status = 422
