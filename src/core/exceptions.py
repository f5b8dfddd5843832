from __future__ import annotations


class PerformanceError(Exception):
    pass


class PerformanceStoreError(PerformanceError):
    """Raised when daily records or checkpoints cannot be read from (or written to) the store."""


class InsufficientDataError(PerformanceError):
    """Raised when none of the requested accounts has any daily performance data."""


class InvalidPeriodKeyError(PerformanceError):
    """Raised for malformed period keys or periods that are not closed yet."""
