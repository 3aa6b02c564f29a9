"""Exception hierarchy for the price ingestion service."""

from typing import Any, Dict, Optional


class PriceFeedError(Exception):
    """Base exception for all pricefeed errors.

    All exceptions carry an optional `context` dict for structured error
    metadata that can be logged without parsing the message.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class UnknownChain(PriceFeedError):
    """Ingestion was requested for a chain with no registered crawler.

    Raised before any job log is created.

    Context keys:
        chain: str
    """


class DataSourceNotFound(PriceFeedError):
    """No source locations could be resolved for the requested date.

    Context keys:
        chain: str
        date: str
    """


class FetchError(PriceFeedError):
    """A network fetch failed (non-2xx or transport error).

    Policy: the affected store is logged and skipped.

    Context keys:
        url: str
        status_code: int | None
    """


class ParseError(PriceFeedError):
    """A fetched document could not be parsed into records.

    Policy: the affected store is logged and skipped.
    """


class CrawlFailed(PriceFeedError):
    """Stores were published for the date but every one of them failed.

    Distinct from an empty crawl: the run is recorded as failed, not as
    "no data".

    Context keys:
        chain: str
        date: str
        stores: int
    """


class CacheError(PriceFeedError):
    """Cache file could not be written or read."""


class CacheEntryNotFound(CacheError):
    """`read` was called for a key that has no cache file.

    Context keys:
        path: str
    """


class ReconciliationError(PriceFeedError):
    """A step of the bulk reconciliation failed. The transaction is rolled back."""


class OperationCancelled(PriceFeedError):
    """The running job observed its cancellation signal.

    Distinct from an empty result: callers must not treat it as "no data".
    """
