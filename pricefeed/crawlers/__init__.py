"""
Crawlers Module

Crawler contract, shared fetch/parse helpers and the configuration-driven
manifest source.
"""
from pathlib import Path
from typing import Dict, List, Union

import structlog

from pricefeed.caching.base import CacheProvider
from pricefeed.config.settings import SourceConfig

from .base import Crawler, PriceSource, SourceLocation
from .fetch import HttpFetcher, decode_text
from .manifest import ManifestCsvSource
from .runner import StoreCrawlRunner
from .utils import clean_text, parse_decimal, unique_by_key

logger = structlog.get_logger(__name__)


def build_crawlers(
    sources: List[SourceConfig],
    fetcher: HttpFetcher,
    cache: CacheProvider,
    cache_root: Union[str, Path],
) -> Dict[str, Crawler]:
    """Build one crawler per configured source, keyed by chain name"""
    crawlers: Dict[str, Crawler] = {}
    for config in sources:
        chain = config.chain
        if chain in crawlers:
            logger.warning("Duplicate source configuration, last wins", chain=chain)
        crawlers[chain] = StoreCrawlRunner(ManifestCsvSource(config, fetcher), cache, cache_root)

    logger.info("Crawlers registered", chains=sorted(crawlers))
    return crawlers


__all__ = [
    "Crawler",
    "PriceSource",
    "SourceLocation",
    "HttpFetcher",
    "decode_text",
    "ManifestCsvSource",
    "StoreCrawlRunner",
    "clean_text",
    "parse_decimal",
    "unique_by_key",
    "build_crawlers",
]
