"""
Manifest CSV Source

Configuration-driven price source for chains that publish a dated JSON
manifest listing one delimited price file per store.

The manifest URL is a `str.format` template receiving `date`, e.g.
`https://example.com/prices/{date:%Y%m%d}.json`. The store code (and
optionally name, street, postal_code, city) is taken from each file name
with `filename_pattern`; `columns` maps RawPriceRow fields to the file's
header names.
"""

import io
import json
import re
from datetime import date
from pathlib import PurePosixPath
from typing import Any, Dict, Hashable, List, Optional
from urllib.parse import unquote, urlparse

import polars as pl
import structlog

from pricefeed.caching.schema import RecordSchema, schema_for
from pricefeed.config.settings import SourceConfig
from pricefeed.core.exceptions import DataSourceNotFound, FetchError, ParseError
from pricefeed.core.models import PriceRecord, RawPriceRow, StoreInfo
from pricefeed.crawlers.base import SourceLocation
from pricefeed.crawlers.fetch import HttpFetcher
from pricefeed.crawlers.utils import clean_text, parse_decimal

logger = structlog.get_logger(__name__)

_DECIMAL_FIELDS = ("price", "price_per_unit", "special_price", "best_price_30", "anchor_price")


class ManifestCsvSource:
    """PriceSource for manifest-indexed delimited price lists"""

    def __init__(self, config: SourceConfig, fetcher: HttpFetcher):
        self.config = config
        self.fetcher = fetcher
        self.chain = config.chain
        self.record_schema: RecordSchema = schema_for(RawPriceRow)
        self._filename_re = re.compile(config.filename_pattern)
        if "code" not in self._filename_re.groupindex:
            raise ValueError(f"filename_pattern for {config.chain} must define a 'code' group")

    def manifest_url(self, day: date) -> str:
        return self.config.manifest_url.format(date=day)

    async def discover(self, day: date) -> List[SourceLocation]:
        url = self.manifest_url(day)
        try:
            text = await self.fetcher.fetch_text(url, self.config.encodings)
        except FetchError as e:
            if e.context.get("status_code") == 404:
                raise DataSourceNotFound(
                    f"No manifest for {self.chain} on {day.isoformat()}",
                    context={"chain": self.chain, "date": day.isoformat()},
                ) from e
            raise

        try:
            manifest = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid manifest at {url}: {e}", context={"url": url}) from e

        entries = manifest if isinstance(manifest, list) else manifest.get(self.config.manifest_files_key, [])

        locations = []
        for entry in entries:
            file_url = entry.get(self.config.manifest_url_key) if isinstance(entry, dict) else entry
            if not file_url:
                continue
            store = self.parse_store(str(file_url))
            if store is None:
                logger.warning("Unrecognized price file name", chain=self.chain, url=file_url)
                continue
            locations.append(SourceLocation(store=store, url=str(file_url)))

        logger.info("Manifest resolved", chain=self.chain, date=day.isoformat(), files=len(locations))
        return locations

    def parse_store(self, file_url: str) -> Optional[StoreInfo]:
        """Extract store identity and address from a price file URL"""
        filename = unquote(PurePosixPath(urlparse(file_url).path).name)
        match = self._filename_re.search(filename)
        if match is None:
            return None

        groups = match.groupdict()

        def part(name: str) -> Optional[str]:
            value = clean_text((groups.get(name) or "").replace("_", " "))
            return value or None

        return StoreInfo(
            chain=self.chain,
            code=groups["code"],
            name=part("name"),
            street_address=part("street"),
            postal_code=part("postal_code"),
            city=part("city"),
        )

    async def fetch_rows(self, location: SourceLocation) -> List[RawPriceRow]:
        text = await self.fetcher.fetch_text(location.url, self.config.encodings)
        return self.parse_rows(text)

    def parse_rows(self, text: str) -> List[RawPriceRow]:
        """Map a delimited price list onto RawPriceRows via the column mapping"""
        if not text.strip():
            return []

        try:
            df = pl.read_csv(
                io.BytesIO(text.encode("utf-8")),
                separator=self.config.delimiter,
                infer_schema_length=0,
                truncate_ragged_lines=True,
                ignore_errors=True,
            )
        except pl.exceptions.NoDataError:
            return []
        except pl.exceptions.PolarsError as e:
            raise ParseError(f"Unreadable price list for {self.chain}: {e}") from e

        # Missing cells read as null; price rows carry empty strings instead
        df = df.fill_null("")

        headers = {self._normalize_header(c): c for c in df.columns}
        mapping: Dict[str, str] = {}
        for field in RawPriceRow.model_fields:
            source = self.config.columns.get(field, field)
            column = headers.get(self._normalize_header(source))
            if column is not None:
                mapping[field] = column

        if "product_code" not in mapping:
            raise ParseError(
                f"Price list for {self.chain} has no product code column",
                context={"columns": df.columns},
            )

        rows = []
        for raw in df.iter_rows(named=True):
            rows.append(RawPriceRow(**{
                field: raw[column] for field, column in mapping.items()
            }))
        return rows

    def row_key(self, row: RawPriceRow) -> Hashable:
        return row.product_code.strip()

    def to_price_record(self, row: RawPriceRow) -> Optional[PriceRecord]:
        if not row.product_code.strip():
            return None

        values: Dict[str, Any] = {
            "product_code": row.product_code,
            "barcode": row.barcode,
            "name": clean_text(row.name),
            "brand": clean_text(row.brand),
            "uom": row.uom,
            "quantity": row.quantity,
        }
        for field in _DECIMAL_FIELDS:
            values[field] = parse_decimal(getattr(row, field), self.config.decimal_separator)
        return PriceRecord(**values)

    @staticmethod
    def _normalize_header(name: str) -> str:
        return " ".join(name.lstrip("\ufeff").split()).lower()
