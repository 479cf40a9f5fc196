"""Typed failures raised by the crawler.

Every error carries enough context to name the failing call and its
arguments, which is what the CLI prints before exiting. Recovery is by
restart; the store's idempotent writes make re-running a pass safe.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CrawlError(Exception):
    """Base class for all crawler failures."""

    def __init__(self, message: str, *, operation: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.details = dict(details or {})

    def describe(self) -> str:
        parts = [str(self)]
        if self.operation:
            parts.append(f"operation={self.operation}")
        for key, value in sorted(self.details.items()):
            parts.append(f"{key}={value!r}")
        return " ".join(parts)


class NetworkError(CrawlError):
    """API call failed at the transport layer or returned a non-success status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ParseError(CrawlError):
    """API response did not have the expected shape."""


class StorageError(CrawlError):
    """A durable read or write against the corpus store failed."""


class ConfigError(CrawlError):
    """Configuration is missing or invalid."""
