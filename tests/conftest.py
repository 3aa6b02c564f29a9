"""
Test Suite Configuration
"""
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pricefeed.config import Settings
from pricefeed.config.settings import DatabaseLogSettings, MaintenanceSettings
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.models import CrawlResult, PriceRecord, StoreInfo
from pricefeed.database.connection import create_engine_for, create_session_factory
from pricefeed.database.models import Base
from pricefeed.ingestion.job_log import JobLogService
from pricefeed.ingestion.orchestrator import IngestionOrchestrator
from pricefeed.ingestion.reconciler import Reconciler
from pricefeed.services.geocoding import ResolvedAddress

TEST_DAY = date(2025, 7, 1)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
        db_logging=DatabaseLogSettings(enabled=False),
        maintenance=MaintenanceSettings(enabled=False),
    )


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database with all tables created"""
    engine = create_engine_for("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(test_engine)


# =============================================================================
# FAKES
# =============================================================================

class FakeCrawler:
    """Crawler returning a fixed result and recording calls"""

    def __init__(self, chain: str, result: Optional[CrawlResult] = None, error: Optional[Exception] = None):
        self.chain = chain
        self.result = result or {}
        self.error = error
        self.crawled: List[date] = []
        self.cleared: List[date] = []

    async def crawl(self, day: date, cancel: Optional[CancellationToken] = None) -> CrawlResult:
        self.crawled.append(day)
        if cancel is not None:
            cancel.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        return self.result

    async def clear_cache(self, day: date) -> int:
        self.cleared.append(day)
        return 0


class RecordingNotifier:
    def __init__(self):
        self.messages: List[Dict[str, str]] = []

    async def notify(self, subject: str, body: str) -> None:
        self.messages.append({"subject": subject, "body": body})


class StaticResolver:
    """Address resolver answering every lookup with the same coordinates"""

    def __init__(self, result: Optional[ResolvedAddress] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: List[str] = []

    async def resolve(self, address: str) -> Optional[ResolvedAddress]:
        self.calls.append(address)
        if self.error is not None:
            raise self.error
        return self.result


def make_record(code: str, price: str = "1.99", barcode: str = "", name: Optional[str] = None) -> PriceRecord:
    return PriceRecord(
        product_code=code,
        barcode=barcode,
        name=name or f"Product {code}",
        brand="Brand",
        uom="kom",
        quantity="1",
        price=Decimal(price),
        price_per_unit=Decimal(price),
    )


def make_crawl_result(chain: str, stores: int = 2, products: int = 3) -> CrawlResult:
    return {
        StoreInfo(chain=chain, code=f"S{s}", name=f"Store {s}", street_address=f"Ulica {s}", city="Zagreb"):
            [make_record(f"P{p}", barcode=f"385000000{p:04d}") for p in range(products)]
        for s in range(stores)
    }


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def job_log(session_factory) -> JobLogService:
    return JobLogService(session_factory)


@pytest.fixture
def reconciler(session_factory) -> Reconciler:
    # Small ceiling keeps SQLite under its bind variable limit
    return Reconciler(session_factory, max_parameters=90)


@pytest.fixture
def crawler() -> FakeCrawler:
    return FakeCrawler("konzum", make_crawl_result("konzum"))


@pytest.fixture
def orchestrator(crawler, reconciler, job_log, notifier) -> IngestionOrchestrator:
    return IngestionOrchestrator({"konzum": crawler}, reconciler, job_log, notifier=notifier)
