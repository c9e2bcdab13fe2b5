"""
Custom exceptions for the Hybrid Sync engine.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for all application-specific errors."""
    pass


class ConfigurationError(SyncError):
    """Error related to sync settings or mapping tables."""
    pass


class MappingError(SyncError):
    """A record could not be mapped into the target shape.

    Raised instead of returning a partial record, so a partial write is
    never attempted.
    """

    def __init__(self, field: str, reason: str = "missing", detail: Optional[str] = None):
        self.field = field
        self.reason = reason
        self.detail = detail
        message = f"Field '{field}' {reason}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ExternalSystemError(SyncError):
    """Error returned by (or while talking to) one of the synced systems."""

    def __init__(self, message: str, status_code: Optional[int] = None, system: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.system = system


class TransientSystemError(ExternalSystemError):
    """Network failure, timeout, 5xx or rate limiting. Safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        system: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, system=system)
        self.retry_after = retry_after


class PermanentSystemError(ExternalSystemError):
    """4xx other than rate limiting, including auth failures. Never retried."""
    pass


class InfrastructureError(SyncError):
    """The queue or cache backing store is unreachable."""
    pass


class QueueUnavailable(InfrastructureError):
    """The sync queue backing store failed."""
    pass


class CacheUnavailable(InfrastructureError):
    """The change cache backing store failed."""
    pass
