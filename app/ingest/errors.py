"""Error taxonomy for feed ingestion."""

from __future__ import annotations


class FeedSyncError(RuntimeError):
    pass


class FetchError(FeedSyncError):
    retryable = True


class InvalidUrl(FetchError):
    retryable = False


class NotXml(FetchError):
    retryable = False


class ConnectionRefused(FetchError):
    pass


class Timeout(FetchError):
    pass


class HostNotFound(FetchError):
    pass


class HttpStatus(FetchError):
    def __init__(self, status_code: int, reason: str = "") -> None:
        self.status_code = status_code
        message = f"HTTP {status_code}: {reason}" if reason else f"HTTP {status_code}"
        super().__init__(message)


class NetworkError(FetchError):
    pass


class ParseError(FeedSyncError):
    """Raised for XML that cannot be parsed at all."""


class NoValidProducts(FeedSyncError):
    pass


class PersistenceError(FeedSyncError):
    """A store call failed; wraps the database error."""


class FeedNotFound(FeedSyncError):
    pass
