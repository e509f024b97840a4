"""
Error taxonomy shared by every component.

Validation and quota failures are raised before any write happens.
Transient network failures are surfaced once and never retried.
Integrity conflicts on presence rows are expected and suppressed by callers.
"""

from typing import Optional


class StemvaultError(Exception):
    """Base class for all domain errors."""

    def __init__(self, detail: str = "Storage error"):
        super().__init__(detail)
        self.detail = detail


class ValidationError(StemvaultError):
    """Bad MIME type, size, name or argument."""

    def __init__(self, detail: str = "Validation error"):
        super().__init__(detail)


class Forbidden(StemvaultError):
    """Ownership or permission denial."""

    def __init__(self, detail: str = "Not authorized"):
        super().__init__(detail)


class NotFound(StemvaultError):
    """Record or object does not exist."""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(detail)


class QuotaExceeded(StemvaultError):
    """The action would push an owner over the storage quota."""

    def __init__(self, detail: str = "Storage quota exceeded",
                 required: int = 0, remaining: int = 0):
        super().__init__(detail)
        self.required = required
        self.remaining = remaining


class Blocked(StemvaultError):
    """A destructive action refused because dependent items still exist."""

    def __init__(self, count: int, detail: Optional[str] = None):
        super().__init__(detail or f"Blocked by {count} remaining item(s)")
        self.count = count


class TransientNetwork(StemvaultError):
    """Network or provider failure; the user retries manually."""

    def __init__(self, detail: str = "Network error, please retry"):
        super().__init__(detail)


class IntegrityConflict(StemvaultError):
    """Referential race on an ephemeral row."""

    def __init__(self, detail: str = "Integrity conflict"):
        super().__init__(detail)


class UploadCancelled(StemvaultError):
    """An in-flight transfer was aborted by its batch."""

    def __init__(self, detail: str = "Upload cancelled"):
        super().__init__(detail)
