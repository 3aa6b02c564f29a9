"""
Crawler Contracts

- Crawler: what the orchestrator drives (one per chain)
- PriceSource: the chain-specific pieces a StoreCrawlRunner composes
"""

from dataclasses import dataclass
from datetime import date
from typing import Hashable, List, Optional, Protocol, Sequence, runtime_checkable

from pydantic import BaseModel

from pricefeed.caching.schema import RecordSchema
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.models import CrawlResult, PriceRecord, StoreInfo


@dataclass(frozen=True)
class SourceLocation:
    """Where one store's price list for a date can be fetched"""
    store: StoreInfo
    url: str


@runtime_checkable
class Crawler(Protocol):
    """Produces a per-store crawl result for one chain and date"""

    chain: str

    async def crawl(self, day: date, cancel: Optional[CancellationToken] = None) -> CrawlResult:
        ...

    async def clear_cache(self, day: date) -> int:
        ...


class PriceSource(Protocol):
    """Chain-specific discovery, fetching and row mapping"""

    chain: str
    record_schema: RecordSchema

    async def discover(self, day: date) -> List[SourceLocation]:
        """Resolve store price-list locations; raises DataSourceNotFound when none are published"""
        ...

    async def fetch_rows(self, location: SourceLocation) -> Sequence[BaseModel]:
        ...

    def row_key(self, row: BaseModel) -> Hashable:
        ...

    def to_price_record(self, row: BaseModel) -> Optional[PriceRecord]:
        """Normalize a raw row; None drops it"""
        ...
