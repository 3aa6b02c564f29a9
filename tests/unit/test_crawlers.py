"""
Unit Tests - Crawlers
"""
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
import pytest

from pricefeed.caching import ColumnarCacheProvider, DelimitedTextCacheProvider, schema_for
from pricefeed.config.settings import SourceConfig
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import CrawlFailed, DataSourceNotFound, FetchError, OperationCancelled, ParseError
from pricefeed.core.models import PriceRecord, RawPriceRow, StoreInfo
from pricefeed.crawlers import (
    HttpFetcher,
    ManifestCsvSource,
    SourceLocation,
    StoreCrawlRunner,
    build_crawlers,
    clean_text,
    decode_text,
    parse_decimal,
    unique_by_key,
)

DAY = date(2025, 7, 1)


class TestUtils:
    """Tests for shared parsing helpers"""

    def test_unique_by_key_last_wins(self):
        items = [("a", 1), ("b", 2), ("a", 3)]

        result = unique_by_key(items, key=lambda i: i[0])

        assert result == [("b", 2), ("a", 3)]

    @pytest.mark.parametrize("text,expected", [
        ("1,99", Decimal("1.99")),
        ("1.234,56", Decimal("1234.56")),
        ("1.99", Decimal("1.99")),
        (" 12,00 EUR", Decimal("12.00")),
        ("-0,5", Decimal("-0.5")),
    ])
    def test_parse_decimal_comma_locale(self, text, expected):
        assert parse_decimal(text) == expected

    def test_parse_decimal_dot_locale(self):
        assert parse_decimal("1,234.56", decimal_separator=".") == Decimal("1234.56")

    @pytest.mark.parametrize("text", [None, "", "n/a", "--", "1,2,3"])
    def test_parse_decimal_invalid(self, text):
        assert parse_decimal(text) is None

    def test_clean_text(self):
        assert clean_text("  Mlijeko \n 2,8%  ") == "Mlijeko 2,8%"
        assert clean_text(None) == ""


class TestDecodeText:
    def test_utf8(self):
        assert decode_text("Čokolada".encode("utf-8")) == "Čokolada"

    def test_windows_1250_fallback(self):
        assert decode_text("Čokolada šećer".encode("windows-1250")) == "Čokolada šećer"

    def test_bom_wins(self):
        assert decode_text(b"\xef\xbb\xbfsifra;naziv") == "sifra;naziv"


# =============================================================================
# RUNNER
# =============================================================================

class FakeSource:
    """PriceSource backed by in-memory rows"""

    def __init__(self, chain: str = "konzum", stores: Optional[Dict[str, List[RawPriceRow]]] = None,
                 failing: Optional[set] = None, missing: bool = False):
        self.chain = chain
        self.record_schema = schema_for(RawPriceRow)
        self.stores = stores or {}
        self.failing = failing or set()
        self.missing = missing
        self.fetched: List[str] = []

    async def discover(self, day: date) -> List[SourceLocation]:
        if self.missing:
            raise DataSourceNotFound("nothing published")
        return [
            SourceLocation(StoreInfo(self.chain, code, name=f"Store {code}"), f"https://prices.test/{code}.csv")
            for code in self.stores
        ]

    async def fetch_rows(self, location: SourceLocation) -> List[RawPriceRow]:
        self.fetched.append(location.store.code)
        if location.store.code in self.failing:
            raise FetchError("HTTP 500", context={"url": location.url, "status_code": 500})
        return self.stores[location.store.code]

    def row_key(self, row: RawPriceRow):
        return row.product_code

    def to_price_record(self, row: RawPriceRow) -> Optional[PriceRecord]:
        if not row.product_code:
            return None
        return PriceRecord(product_code=row.product_code, name=row.name, price=parse_decimal(row.price))


def raw(code: str, price: str = "1,00", name: str = "") -> RawPriceRow:
    return RawPriceRow(product_code=code, name=name or f"Product {code}", price=price)


class TestStoreCrawlRunner:
    """Tests for the fetch-or-reuse loop"""

    async def test_crawl_fetches_and_caches(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1"), raw("2")], "S2": [raw("3")]})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        result = await runner.crawl(DAY)

        assert {s.code for s in result} == {"S1", "S2"}
        assert (tmp_path / "konzum" / "S1-2025-07-01.csv").is_file()
        assert source.fetched == ["S1", "S2"]

    async def test_cache_hit_skips_fetch(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1")]})
        runner = StoreCrawlRunner(source, ColumnarCacheProvider(), tmp_path)

        first = await runner.crawl(DAY)
        second = await runner.crawl(DAY)

        assert source.fetched == ["S1"]
        assert first == second

    async def test_rows_deduplicated_last_wins(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1", "1,00"), raw("2"), raw("1", "2,50")]})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        result = await runner.crawl(DAY)
        records = next(iter(result.values()))

        assert [r.product_code for r in records] == ["2", "1"]
        assert records[1].price == Decimal("2.50")

    async def test_failing_store_skipped(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1")], "S2": [raw("2")]}, failing={"S1"})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        result = await runner.crawl(DAY)

        assert [s.code for s in result] == ["S2"]

    async def test_every_store_failing_is_a_crawl_failure(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1")], "S2": [raw("2")]}, failing={"S1", "S2"})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        with pytest.raises(CrawlFailed) as exc_info:
            await runner.crawl(DAY)

        assert exc_info.value.context["stores"] == 2
        assert isinstance(exc_info.value.__cause__, FetchError)

    async def test_parser_crash_is_not_an_empty_crawl(self, tmp_path, monkeypatch):
        source = FakeSource(stores={"S1": [raw("1")]})

        def broken(row):
            raise TypeError("unexpected keyword argument")

        monkeypatch.setattr(source, "to_price_record", broken)
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        with pytest.raises(CrawlFailed) as exc_info:
            await runner.crawl(DAY)
        assert isinstance(exc_info.value.__cause__, TypeError)

    async def test_blank_rows_dropped(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1"), RawPriceRow()]})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)

        result = await runner.crawl(DAY)

        assert len(next(iter(result.values()))) == 1

    async def test_no_sources_returns_empty(self, tmp_path):
        runner = StoreCrawlRunner(FakeSource(missing=True), DelimitedTextCacheProvider(), tmp_path)

        assert await runner.crawl(DAY) == {}

    async def test_cancelled_before_first_store(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1")]})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(OperationCancelled):
            await runner.crawl(DAY, token)
        assert source.fetched == []

    async def test_clear_cache(self, tmp_path):
        source = FakeSource(stores={"S1": [raw("1")], "S2": [raw("2")]})
        runner = StoreCrawlRunner(source, DelimitedTextCacheProvider(), tmp_path)
        await runner.crawl(DAY)

        assert await runner.clear_cache(DAY) == 2
        assert not list((tmp_path / "konzum").iterdir())


# =============================================================================
# MANIFEST SOURCE
# =============================================================================

PRICE_LIST = (
    "Šifra;Naziv;Marka;Cijena;Barkod\n"
    "1001;Mlijeko 2,8%;Dukat;1,29;3850104001234\n"
    "1002;Kruh  bijeli;;0,99;\n"
)

SOURCE = SourceConfig(
    chain="Konzum",
    manifest_url="https://prices.test/{date:%Y-%m-%d}/index.json",
    filename_pattern=r"(?P<code>\d{4})_(?P<street>.+?)_(?P<postal_code>\d{5})_(?P<city>[^_.]+)",
    columns={"product_code": "Šifra", "name": "Naziv", "brand": "Marka", "price": "Cijena", "barcode": "Barkod"},
)


def manifest_transport(files: List[str], manifest_status: int = 200, price_status: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("index.json"):
            if manifest_status != 200:
                return httpx.Response(manifest_status)
            return httpx.Response(200, json={"files": [{"URL": f} for f in files]})
        if price_status != 200:
            return httpx.Response(price_status)
        return httpx.Response(200, content=PRICE_LIST.encode("windows-1250"))

    return httpx.MockTransport(handler)


class TestManifestCsvSource:
    """Tests for the configuration-driven manifest source"""

    def test_chain_normalized(self):
        assert SOURCE.chain == "konzum"

    def test_pattern_requires_code_group(self):
        config = SOURCE.model_copy(update={"filename_pattern": r"\d+"})
        with pytest.raises(ValueError):
            ManifestCsvSource(config, fetcher=None)

    def test_parse_store(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)

        store = source.parse_store("https://prices.test/2025-07-01/0101_Ilica%2010_10000_Zagreb.csv")

        assert store == StoreInfo("konzum", "0101")
        assert store.street_address == "Ilica 10"
        assert store.postal_code == "10000"
        assert store.city == "Zagreb"

    def test_parse_rows_maps_headers(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)

        rows = source.parse_rows(PRICE_LIST)

        assert [r.product_code for r in rows] == ["1001", "1002"]
        assert rows[0].brand == "Dukat"
        assert rows[1].barcode == ""

    def test_parse_rows_short_line_reads_empty_cells(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)

        rows = source.parse_rows("Šifra;Naziv;Marka;Cijena;Barkod\n1003;Sol\n")

        assert len(rows) == 1
        assert rows[0].name == "Sol"
        assert rows[0].brand == ""
        assert rows[0].price == ""
        assert source.to_price_record(rows[0]).price is None

    def test_parse_rows_without_code_column(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)

        with pytest.raises(ParseError):
            source.parse_rows("Naziv;Cijena\nKruh;1,00\n")

    def test_to_price_record(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)
        rows = source.parse_rows(PRICE_LIST)

        first, second = (source.to_price_record(r) for r in rows)

        assert first.price == Decimal("1.29")
        assert first.barcode == "3850104001234"
        assert second.name == "Kruh bijeli"
        assert second.barcode == "_1002"
        assert second.brand is None

    async def test_discover_and_crawl(self, tmp_path):
        files = [
            "https://prices.test/f/0101_Ilica_10_10000_Zagreb.csv",
            "https://prices.test/f/0202_Riva_1_21000_Split.csv",
            "https://prices.test/f/readme.txt",
        ]
        async with HttpFetcher(transport=manifest_transport(files)) as fetcher:
            crawlers = build_crawlers([SOURCE], fetcher, DelimitedTextCacheProvider(), tmp_path)
            result = await crawlers["konzum"].crawl(DAY)

        assert sorted(s.code for s in result) == ["0101", "0202"]
        assert all(len(records) == 2 for records in result.values())
        assert (tmp_path / "konzum" / "0101-2025-07-01.csv").is_file()

    async def test_missing_manifest_is_not_found(self):
        async with HttpFetcher(transport=manifest_transport([], manifest_status=404)) as fetcher:
            source = ManifestCsvSource(SOURCE, fetcher)
            with pytest.raises(DataSourceNotFound):
                await source.discover(DAY)

    async def test_server_error_propagates(self):
        async with HttpFetcher(transport=manifest_transport([], manifest_status=503)) as fetcher:
            source = ManifestCsvSource(SOURCE, fetcher)
            with pytest.raises(FetchError) as exc_info:
                await source.discover(DAY)

        assert exc_info.value.context["status_code"] == 503

    async def test_failed_price_files_fail_the_crawl(self, tmp_path):
        files = ["https://prices.test/f/0101_Ilica_10_10000_Zagreb.csv"]
        async with HttpFetcher(transport=manifest_transport(files, price_status=500)) as fetcher:
            crawlers = build_crawlers([SOURCE], fetcher, DelimitedTextCacheProvider(), tmp_path)
            with pytest.raises(CrawlFailed):
                await crawlers["konzum"].crawl(DAY)

    def test_manifest_url(self):
        source = ManifestCsvSource(SOURCE, fetcher=None)
        assert source.manifest_url(DAY) == "https://prices.test/2025-07-01/index.json"

    async def test_invalid_manifest_json(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>"))
        async with HttpFetcher(transport=transport) as fetcher:
            with pytest.raises(ParseError):
                await ManifestCsvSource(SOURCE, fetcher).discover(DAY)


def test_build_crawlers_last_config_wins(tmp_path):
    second = SOURCE.model_copy(update={"manifest_url": "https://other.test/{date:%Y%m%d}.json"})

    crawlers = build_crawlers([SOURCE, second], fetcher=None, cache=DelimitedTextCacheProvider(), cache_root=tmp_path)

    assert list(crawlers) == ["konzum"]
    assert crawlers["konzum"].source.manifest_url(DAY) == "https://other.test/20250701.json"


async def test_manifest_list_form(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("index.json"):
            return httpx.Response(200, json=["https://prices.test/f/0101_Ilica_10_10000_Zagreb.csv"])
        return httpx.Response(200, content=PRICE_LIST.encode("utf-8"))

    async with HttpFetcher(transport=httpx.MockTransport(handler)) as fetcher:
        locations = await ManifestCsvSource(SOURCE, fetcher).discover(DAY)

    assert [loc.store.code for loc in locations] == ["0101"]
