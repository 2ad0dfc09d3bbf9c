"""
Custom exception classes for cache operations.

Provides a small exception hierarchy so callers can tell recoverable
conditions (missing records, full storage, corrupt entries) apart from
programming errors and integrity failures.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from typing import Optional


class CacheError(Exception):
    """Base exception for all cache-related errors."""

    def __init__(self, message: str):
        """
        Initialize cache error.

        Args:
            message: Human-readable error description
        """
        self.message = message
        super().__init__(self.message)


class RecordNotFoundError(CacheError):
    """Raised when a record is required but not present in the cache."""

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(message or f"No cached record for {key}")
        self.key = key


class StorageFullError(CacheError):
    """Raised when a write would exceed the storage capacity."""

    def __init__(
        self,
        message: str = "Cache storage is full",
        requested: int = 0,
        available: Optional[int] = None,
    ):
        super().__init__(message)
        self.requested = requested
        self.available = available


class CorruptRecordError(CacheError):
    """Raised when a stored record fails its integrity check."""

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(message or f"Cached record {key} failed integrity check")
        self.key = key


class InvalidArgumentError(CacheError, ValueError):
    """Raised for contract violations such as negative sizes or malformed keys."""


class StatsDriftError(CacheError):
    """Raised when running totals disagree with a full recount."""

    def __init__(self, message: str, expected: object = None, actual: object = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
