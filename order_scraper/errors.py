"""Failure conditions raised by the collector.

A field that cannot be resolved during extraction is not an error: it becomes an
empty string. Everything below is something a caller has to act on.
"""

from __future__ import annotations

from typing import Optional


class CollectorError(Exception):
    pass


class PageFetchFailure(CollectorError):
    """A listing page could not be fetched after all retries."""

    def __init__(self, url: str, status: Optional[int] = None, attempts: int = 0, reason: str = ""):
        self.url = url
        self.status = status
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"fetch failed url={url} status={status} attempts={attempts} {reason}".strip())


class AuthRequired(CollectorError):
    """The source answered 401/403 or served a sign-in page."""

    def __init__(self, url: str = "", status: Optional[int] = None):
        self.url = url
        self.status = status
        super().__init__(f"authentication required url={url} status={status}")


class CollectionCancelled(CollectorError):
    """The session was cancelled (user, closed tab or time budget)."""


class StoreError(CollectorError):
    """The persisted state store could not be read or written."""
