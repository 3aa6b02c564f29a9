"""
Caching Module

Fetch-or-reuse storage for crawled price lists.
"""
from typing import Optional

from pricefeed.config.settings import Settings, get_settings

from .base import CacheProvider, FileCacheProvider
from .csv_provider import DelimitedTextCacheProvider
from .parquet_provider import ColumnarCacheProvider
from .schema import FieldKind, FieldSpec, RecordSchema, register_schema, schema_for


def create_cache_provider(settings: Optional[Settings] = None) -> CacheProvider:
    """Build the cache backend selected by CACHE_BACKEND"""
    settings = settings or get_settings()
    if settings.cache.backend == "csv":
        return DelimitedTextCacheProvider(delimiter=settings.cache.delimiter)
    return ColumnarCacheProvider()


__all__ = [
    "CacheProvider",
    "FileCacheProvider",
    "DelimitedTextCacheProvider",
    "ColumnarCacheProvider",
    "FieldKind",
    "FieldSpec",
    "RecordSchema",
    "register_schema",
    "schema_for",
    "create_cache_provider",
]
