"""
Core Module
"""
from .cancellation import CancellationToken
from .exceptions import (
    CacheEntryNotFound,
    CacheError,
    CrawlFailed,
    DataSourceNotFound,
    FetchError,
    OperationCancelled,
    ParseError,
    PriceFeedError,
    ReconciliationError,
    UnknownChain,
)
from .models import CrawlResult, PriceRecord, RawPriceRow, StoreInfo, StoreSnapshotKey

__all__ = [
    "CancellationToken",
    "CacheEntryNotFound",
    "CacheError",
    "CrawlFailed",
    "DataSourceNotFound",
    "FetchError",
    "OperationCancelled",
    "ParseError",
    "PriceFeedError",
    "ReconciliationError",
    "UnknownChain",
    "CrawlResult",
    "PriceRecord",
    "RawPriceRow",
    "StoreInfo",
    "StoreSnapshotKey",
]
