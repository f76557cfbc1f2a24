"""Billing sync exceptions.

Every error raised on the webhook path derives from BillingSyncError so the
HTTP layer and the dispatch loop can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Any


class BillingSyncError(Exception):
    """Base exception for billing sync errors."""

    def __init__(
        self,
        message: str,
        code: str = "BILLING_SYNC_ERROR",
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {"error": self.code, "message": self.message, "details": self.details}


class SignatureInvalid(BillingSyncError):
    """Envelope could not be authenticated against any trusted secret.

    Never retried: the payload is untrusted.
    """

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="SIGNATURE_INVALID")


class BodyReadError(BillingSyncError):
    """Request body is unreadable or is not a well-formed event envelope."""

    def __init__(self, message: str = "Malformed webhook body"):
        super().__init__(message, code="BODY_READ_ERROR")


class ResolutionFailed(BillingSyncError):
    """No internal account matched the event's identifying hints."""

    def __init__(self, message: str = "No account matched", hints: dict[str, Any] | None = None):
        super().__init__(message, code="RESOLUTION_FAILED", details={"hints": hints or {}})


class StoreError(BillingSyncError):
    """Document store read failed."""

    def __init__(self, message: str, code: str = "STORE_ERROR", key: str | None = None):
        super().__init__(message, code=code, details={"key": key} if key else {})
        self.key = key


class StoreWriteError(StoreError):
    """Document store write (upsert) failed."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message, code="STORE_WRITE_ERROR", key=key)


class UpstreamLookupError(BillingSyncError):
    """Billing provider API lookup failed after retries."""

    def __init__(self, message: str, resource: str | None = None, status_code: int | None = None):
        details: dict[str, Any] = {}
        if resource:
            details["resource"] = resource
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, code="UPSTREAM_LOOKUP_ERROR", details=details)
        self.resource = resource
        self.status_code = status_code
