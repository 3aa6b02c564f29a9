"""
Unit Tests - Bulk Reconciliation
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, insert, select
from sqlalchemy.dialects.postgresql.asyncpg import PGDialect_asyncpg
from sqlalchemy.exc import OperationalError

from pricefeed.config.settings import DatabaseSettings
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import OperationCancelled, ReconciliationError
from pricefeed.core.models import StoreInfo
from pricefeed.database.models import Chain, ChainProduct, Price, Product, Store
from pricefeed.ingestion.reconciler import FACT_COLUMNS, Reconciler, product_identity, rows_per_batch
from pricefeed.services.geocoding import ResolvedAddress
from tests.conftest import TEST_DAY, StaticResolver, make_crawl_result, make_record


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestBatchSizing:
    def test_rows_per_batch(self):
        assert rows_per_batch(65535) == 65535 // FACT_COLUMNS
        assert rows_per_batch(90) == 10
        assert rows_per_batch(5) == 1

    def test_product_identity(self):
        assert product_identity("konzum", "_X1") == "konzum_X1"
        assert product_identity("konzum", "3850104001234") == "3850104001234"

    def test_default_ceiling_follows_driver(self):
        assert DatabaseSettings().driver == "asyncpg"
        assert DatabaseSettings().parameter_ceiling == 32767
        assert DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///prices.db").parameter_ceiling == 32766
        assert DatabaseSettings(DB_MAX_PARAMETERS=900).parameter_ceiling == 900

    def test_default_batch_fits_asyncpg(self):
        batch = rows_per_batch(DatabaseSettings().parameter_ceiling)
        row = {
            "chain_product_id": 1,
            "store_id": 1,
            "date": TEST_DAY,
            "regular_price": Decimal("1.99"),
            "price_per_unit": Decimal("1.99"),
            "special_price": None,
            "best_price_30": None,
            "anchor_price": None,
            "created_at": None,
        }

        compiled = insert(Price).values([row] * batch).compile(dialect=PGDialect_asyncpg())

        assert len(compiled.params) == batch * FACT_COLUMNS
        assert len(compiled.params) <= 32767


class TestReconciler:
    """Tests for the transactional replace of a day's facts"""

    async def test_inserts_dimensions_and_facts(self, reconciler, session_factory):
        result = await reconciler.reconcile("konzum", TEST_DAY, make_crawl_result("konzum", stores=2, products=3))

        assert result.facts_inserted == 6
        assert result.stores_created == 2
        assert result.products_created == 3
        assert result.chain_products_created == 3
        assert await count(session_factory, Price) == 6
        assert await count(session_factory, Chain) == 1

    async def test_batch_boundary(self, session_factory):
        reconciler = Reconciler(session_factory, max_parameters=90)
        data = make_crawl_result("konzum", stores=1, products=reconciler.batch_size + 1)

        result = await reconciler.reconcile("konzum", TEST_DAY, data)

        assert result.batch_sizes == [reconciler.batch_size, 1]
        assert await count(session_factory, Price) == reconciler.batch_size + 1

    async def test_rerun_replaces_facts(self, reconciler, session_factory):
        data = make_crawl_result("konzum", stores=2, products=3)
        await reconciler.reconcile("konzum", TEST_DAY, data)

        result = await reconciler.reconcile("konzum", TEST_DAY, data)

        assert result.facts_deleted == 6
        assert result.facts_inserted == 6
        assert result.stores_created == 0
        assert result.stores_updated == 2
        assert await count(session_factory, Price) == 6

    async def test_failing_last_batch_rolls_back(self, session_factory, monkeypatch):
        reconciler = Reconciler(session_factory, max_parameters=90)
        data = make_crawl_result("konzum", stores=1, products=25)
        original = reconciler._insert_batch
        calls = []

        async def failing_insert(session, batch):
            calls.append(len(batch))
            if len(calls) == 3:
                raise OperationalError("INSERT", {}, Exception("disk full"))
            await original(session, batch)

        monkeypatch.setattr(reconciler, "_insert_batch", failing_insert)

        with pytest.raises(ReconciliationError):
            await reconciler.reconcile("konzum", TEST_DAY, data)

        assert calls == [10, 10, 5]
        assert await count(session_factory, Price) == 0
        assert await count(session_factory, Store) == 0
        assert await count(session_factory, Chain) == 0

    async def test_cancellation_between_batches(self, session_factory, monkeypatch):
        reconciler = Reconciler(session_factory, max_parameters=90)
        data = make_crawl_result("konzum", stores=1, products=25)
        token = CancellationToken()
        original = reconciler._insert_batch

        async def cancel_after_first(session, batch):
            await original(session, batch)
            token.cancel("preempted")

        monkeypatch.setattr(reconciler, "_insert_batch", cancel_after_first)

        with pytest.raises(OperationCancelled):
            await reconciler.reconcile("konzum", TEST_DAY, data, token)

        assert await count(session_factory, Price) == 0

    async def test_duplicate_rows_last_wins(self, reconciler, session_factory):
        store = StoreInfo(chain="konzum", code="S1")
        data = {store: [make_record("P1", "1.00"), make_record("P2", "2.00"), make_record("P1", "3.50")]}

        result = await reconciler.reconcile("konzum", TEST_DAY, data)

        assert result.facts_inserted == 2
        async with session_factory() as session:
            price = await session.scalar(
                select(Price.regular_price)
                .join(ChainProduct, Price.chain_product_id == ChainProduct.id)
                .where(ChainProduct.code == "P1")
            )
        assert Decimal(str(price)) == Decimal("3.50")

    async def test_store_metadata_refreshed(self, reconciler, session_factory):
        await reconciler.reconcile(
            "konzum", TEST_DAY, {StoreInfo("konzum", "S1", name="Old", city="Split"): [make_record("P1")]}
        )
        await reconciler.reconcile(
            "konzum", TEST_DAY, {StoreInfo("konzum", "S1", name="New", city="Zagreb"): [make_record("P1")]}
        )

        async with session_factory() as session:
            stores = list(await session.scalars(select(Store)))
        assert len(stores) == 1
        assert stores[0].name == "New"
        assert stores[0].city == "Zagreb"

    async def test_synthetic_barcodes_do_not_collide_across_chains(self, reconciler, session_factory):
        await reconciler.reconcile("konzum", TEST_DAY, {StoreInfo("konzum", "S1"): [make_record("X1")]})
        await reconciler.reconcile("spar", TEST_DAY, {StoreInfo("spar", "S1"): [make_record("X1")]})

        async with session_factory() as session:
            barcodes = sorted(await session.scalars(select(Product.barcode)))
            chain_barcodes = set(await session.scalars(select(ChainProduct.barcode)))
        assert barcodes == ["konzum_X1", "spar_X1"]
        assert chain_barcodes == {"_X1"}

    async def test_longest_synthetic_identity_fits_columns(self, reconciler, session_factory):
        chain = "c" * Chain.__table__.c.name.type.length
        code = "9" * ChainProduct.__table__.c.code.type.length

        await reconciler.reconcile(chain, TEST_DAY, {StoreInfo(chain, "S1"): [make_record(code)]})

        async with session_factory() as session:
            identity = await session.scalar(select(Product.barcode))
            chain_barcode = await session.scalar(select(ChainProduct.barcode))
        assert len(identity) <= Product.__table__.c.barcode.type.length
        assert len(chain_barcode) <= ChainProduct.__table__.c.barcode.type.length
        assert identity == f"{chain}_{code}"

    async def test_real_barcode_shared_across_chains(self, reconciler, session_factory):
        await reconciler.reconcile("konzum", TEST_DAY, {StoreInfo("konzum", "S1"): [make_record("A", barcode="385")]})
        await reconciler.reconcile("spar", TEST_DAY, {StoreInfo("spar", "S9"): [make_record("B", barcode="385")]})

        assert await count(session_factory, Product) == 1
        assert await count(session_factory, ChainProduct) == 2

    async def test_other_chain_facts_untouched(self, reconciler, session_factory):
        await reconciler.reconcile("konzum", TEST_DAY, make_crawl_result("konzum", stores=1, products=2))
        await reconciler.reconcile("spar", TEST_DAY, make_crawl_result("spar", stores=1, products=3))

        result = await reconciler.reconcile("konzum", TEST_DAY, make_crawl_result("konzum", stores=1, products=1))

        assert result.facts_deleted == 2
        assert await count(session_factory, Price) == 4

    async def test_new_store_geocoded(self, session_factory):
        resolver = StaticResolver(ResolvedAddress(latitude=45.81, longitude=15.98, postal_code="10000"))
        reconciler = Reconciler(session_factory, address_resolver=resolver, max_parameters=90)

        await reconciler.reconcile(
            "konzum", TEST_DAY, {StoreInfo("konzum", "S1", street_address="Ilica 1", city="Zagreb"): [make_record("P1")]}
        )
        await reconciler.reconcile(
            "konzum", TEST_DAY, {StoreInfo("konzum", "S1", street_address="Ilica 1", city="Zagreb"): [make_record("P1")]}
        )

        async with session_factory() as session:
            store = await session.scalar(select(Store))
        assert resolver.calls == ["Ilica 1, Zagreb"]
        assert store.latitude == pytest.approx(45.81)
        assert store.postal_code == "10000"

    async def test_geocoding_failure_keeps_store(self, session_factory):
        resolver = StaticResolver(error=RuntimeError("quota exceeded"))
        reconciler = Reconciler(session_factory, address_resolver=resolver, max_parameters=90)

        result = await reconciler.reconcile(
            "konzum", TEST_DAY, {StoreInfo("konzum", "S1", street_address="Ilica 1"): [make_record("P1")]}
        )

        assert result.stores_created == 1
        async with session_factory() as session:
            store = await session.scalar(select(Store))
        assert store.latitude is None
