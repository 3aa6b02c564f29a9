"""
Store Crawl Runner

The per-store fetch-or-reuse loop shared by every price source:

1. Discover store locations for the date
2. De-duplicate stores (last-seen metadata wins)
3. Per store: reuse the cached rows, or fetch, de-duplicate and cache them
4. Normalize rows into PriceRecords

A failing store is logged and skipped; a crawl where every store failed raises
CrawlFailed. Cancellation is checked before each store.
"""

import time
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel

from pricefeed.caching.base import CacheProvider
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import CrawlFailed, DataSourceNotFound, OperationCancelled
from pricefeed.core.models import CrawlResult, PriceRecord, StoreInfo, StoreSnapshotKey
from pricefeed.crawlers.base import PriceSource, SourceLocation
from pricefeed.crawlers.utils import unique_by_key

logger = structlog.get_logger(__name__)


class StoreCrawlRunner:
    """Implements the Crawler contract for any PriceSource"""

    def __init__(self, source: PriceSource, cache: CacheProvider, cache_root: Union[str, Path]):
        self.source = source
        self.cache = cache
        self.cache_root = Path(cache_root)

    @property
    def chain(self) -> str:
        return self.source.chain

    @property
    def cache_folder(self) -> Path:
        return self.cache_root / self.chain

    async def crawl(self, day: date, cancel: Optional[CancellationToken] = None) -> CrawlResult:
        cancel = cancel or CancellationToken()
        start = time.perf_counter()

        try:
            locations = await self.source.discover(day)
        except DataSourceNotFound as e:
            logger.warning("No price lists published", chain=self.chain, date=day.isoformat(), reason=str(e))
            return {}

        if not locations:
            logger.warning("No price lists published", chain=self.chain, date=day.isoformat())
            return {}

        stores = unique_by_key(locations, key=lambda loc: loc.store)
        result: Dict[StoreInfo, List[PriceRecord]] = {}
        skipped = 0
        last_error: Optional[Exception] = None

        for location in stores:
            cancel.raise_if_cancelled()
            try:
                rows = await self._load_rows(location, day)
                records = [r for r in map(self.source.to_price_record, rows) if r is not None]
            except OperationCancelled:
                raise
            except Exception as e:
                skipped += 1
                last_error = e
                logger.error(
                    "Store crawl failed, skipping",
                    chain=self.chain,
                    store=location.store.code,
                    url=location.url,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            result[location.store] = records
            logger.debug("Store processed", chain=self.chain, store=location.store.code, products=len(records))

        if skipped and skipped == len(stores):
            raise CrawlFailed(
                f"All {skipped} stores failed for {self.chain} on {day.isoformat()}",
                context={"chain": self.chain, "date": day.isoformat(), "stores": skipped},
            ) from last_error

        logger.info(
            "Crawl completed",
            chain=self.chain,
            date=day.isoformat(),
            stores=len(result),
            skipped=skipped,
            products=sum(len(v) for v in result.values()),
            duration_seconds=round(time.perf_counter() - start, 2),
        )
        return result

    async def clear_cache(self, day: date) -> int:
        return await self.cache.clear(self.cache_folder, day)

    async def _load_rows(self, location: SourceLocation, day: date) -> Sequence[BaseModel]:
        key = StoreSnapshotKey(self.chain, location.store.code, day).cache_key
        schema = self.source.record_schema

        if self.cache.exists(self.cache_folder, key):
            logger.debug("Cache hit", chain=self.chain, store=location.store.code)
            return await self.cache.read(self.cache_folder, key, schema)

        logger.debug("Cache miss, fetching", chain=self.chain, store=location.store.code, url=location.url)
        rows = await self.source.fetch_rows(location)
        rows = unique_by_key(rows, key=self.source.row_key)
        await self.cache.save(self.cache_folder, key, rows, schema)
        return rows
