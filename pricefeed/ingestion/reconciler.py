"""
Bulk Reconciliation

Replaces one chain's price facts for one date inside a single transaction:

1. Delete existing facts for (chain, date)
2. Upsert the chain
3. Upsert stores (address resolution for new stores only)
4. Upsert products and chain products
5. Insert fact rows in multi-row INSERT batches sized under the bind
   parameter ceiling, checking cancellation before each batch
6. Commit; any failure rolls the whole transaction back
"""

import time
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import ReconciliationError
from pricefeed.core.models import CrawlResult, PriceRecord, StoreInfo, is_synthetic_barcode
from pricefeed.database.models import Chain, ChainProduct, Price, Product, Store, utcnow
from pricefeed.services.geocoding import AddressResolver, NullAddressResolver

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# chain_product_id, store_id, date, regular_price, price_per_unit,
# special_price, best_price_30, anchor_price, created_at
FACT_COLUMNS = 9

# Upper bound on IN-list length for dimension lookups
LOOKUP_CHUNK_SIZE = 1000


def rows_per_batch(max_parameters: int) -> int:
    """Fact rows per INSERT statement for a bind parameter ceiling"""
    return max(1, max_parameters // FACT_COLUMNS)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def product_identity(chain: str, barcode: str) -> str:
    """Cross-chain product key; synthetic barcodes are scoped to their chain"""
    if is_synthetic_barcode(barcode):
        return f"{chain}{barcode}"
    return barcode


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation"""
    chain: str
    date: date
    facts_deleted: int = 0
    facts_inserted: int = 0
    stores_created: int = 0
    stores_updated: int = 0
    products_created: int = 0
    chain_products_created: int = 0
    chain_products_updated: int = 0
    records_dropped: int = 0
    batch_sizes: List[int] = Field(default_factory=list)
    duration_seconds: float = 0


class Reconciler:
    """
    Bulk writer for crawl results.

    Example:
        reconciler = Reconciler(get_session_factory(), resolver)
        result = await reconciler.reconcile("konzum", date(2025, 7, 1), crawl_result, token)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        address_resolver: Optional[AddressResolver] = None,
        max_parameters: int = 32767,
    ):
        self.session_factory = session_factory
        self.address_resolver = address_resolver or NullAddressResolver()
        self.max_parameters = max_parameters

    @property
    def batch_size(self) -> int:
        return rows_per_batch(self.max_parameters)

    async def reconcile(
        self,
        chain: str,
        day: date,
        data: CrawlResult,
        cancel: Optional[CancellationToken] = None,
    ) -> ReconcileResult:
        cancel = cancel or CancellationToken()
        result = ReconcileResult(chain=chain, date=day)
        start = time.perf_counter()

        logger.info("Reconciliation started", chain=chain, date=day.isoformat(), stores=len(data))
        cancel.raise_if_cancelled()

        session = self.session_factory()
        try:
            async with session.begin():
                result.facts_deleted = await self._delete_facts(session, chain, day)
                chain_row = await self._upsert_chain(session, chain)
                stores = await self._upsert_stores(session, chain_row, list(data.keys()), result)
                chain_products = await self._upsert_products(
                    session, chain_row, [r for records in data.values() for r in records], result
                )
                rows = self._build_fact_rows(data, day, stores, chain_products, result)
                await self._insert_facts(session, rows, cancel, result)
        except SQLAlchemyError as e:
            logger.error("Reconciliation failed, rolled back", chain=chain, date=day.isoformat(), error=str(e))
            raise ReconciliationError(
                f"Reconciliation failed for {chain} on {day.isoformat()}: {e}",
                context={"chain": chain, "date": day.isoformat()},
            ) from e
        finally:
            session.expunge_all()
            await session.close()

        result.duration_seconds = round(time.perf_counter() - start, 3)
        logger.info(
            "Reconciliation completed",
            chain=chain,
            date=day.isoformat(),
            facts_deleted=result.facts_deleted,
            facts_inserted=result.facts_inserted,
            stores_created=result.stores_created,
            products_created=result.products_created,
            records_dropped=result.records_dropped,
            batches=len(result.batch_sizes),
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _delete_facts(self, session: AsyncSession, chain: str, day: date) -> int:
        store_ids = select(Store.id).join(Chain, Store.chain_id == Chain.id).where(Chain.name == chain)
        outcome = await session.execute(
            delete(Price)
            .where(Price.date == day, Price.store_id.in_(store_ids))
            .execution_options(synchronize_session=False)
        )
        return max(outcome.rowcount or 0, 0)

    async def _upsert_chain(self, session: AsyncSession, chain: str) -> Chain:
        row = await session.scalar(select(Chain).where(Chain.name == chain))
        if row is None:
            row = Chain(name=chain)
            session.add(row)
            await session.flush()
            logger.info("Chain created", chain=chain)
        return row

    async def _upsert_stores(
        self,
        session: AsyncSession,
        chain: Chain,
        infos: List[StoreInfo],
        result: ReconcileResult,
    ) -> Dict[str, Store]:
        codes = [info.code for info in infos]
        existing: Dict[str, Store] = {}
        for chunk in chunked(codes, LOOKUP_CHUNK_SIZE):
            rows = await session.scalars(select(Store).where(Store.chain_id == chain.id, Store.code.in_(chunk)))
            existing.update({s.code: s for s in rows})

        for info in infos:
            store = existing.get(info.code)
            if store is None:
                store = await self._new_store(chain, info)
                session.add(store)
                existing[info.code] = store
                result.stores_created += 1
            else:
                # Fields the crawler did not publish keep their stored value
                store.name = info.name or store.name
                store.address = info.street_address or store.address
                store.postal_code = info.postal_code or store.postal_code
                store.city = info.city or store.city
                result.stores_updated += 1

        await session.flush()
        return existing

    async def _new_store(self, chain: Chain, info: StoreInfo) -> Store:
        store = Store(
            chain_id=chain.id,
            code=info.code,
            name=info.name,
            address=info.street_address,
            postal_code=info.postal_code,
            city=info.city,
        )

        address = info.full_address
        if not address:
            return store

        try:
            resolved = await self.address_resolver.resolve(address)
        except Exception as e:
            logger.warning("Address resolution failed", chain=chain.name, store=info.code, error=str(e))
            return store

        if resolved is not None:
            store.latitude = resolved.latitude
            store.longitude = resolved.longitude
            store.city = store.city or resolved.city
            store.postal_code = store.postal_code or resolved.postal_code
        return store

    async def _upsert_products(
        self,
        session: AsyncSession,
        chain: Chain,
        records: List[PriceRecord],
        result: ReconcileResult,
    ) -> Dict[str, ChainProduct]:
        # Last sighting of a product code supplies its attributes
        by_code: Dict[str, PriceRecord] = {}
        for record in records:
            by_code[record.product_code] = record

        by_identity: Dict[str, PriceRecord] = {}
        for record in by_code.values():
            by_identity[product_identity(chain.name, record.barcode)] = record

        products: Dict[str, Product] = {}
        for chunk in chunked(list(by_identity), LOOKUP_CHUNK_SIZE):
            rows = await session.scalars(select(Product).where(Product.barcode.in_(chunk)))
            products.update({p.barcode: p for p in rows})

        new_products = []
        for identity, record in by_identity.items():
            if identity not in products:
                product = Product(
                    barcode=identity,
                    name=record.name,
                    brand=record.brand,
                    uom=record.uom,
                    quantity=record.quantity,
                )
                products[identity] = product
                new_products.append(product)

        if new_products:
            session.add_all(new_products)
            await session.flush()
            result.products_created = len(new_products)

        chain_products: Dict[str, ChainProduct] = {}
        for chunk in chunked(list(by_code), LOOKUP_CHUNK_SIZE):
            rows = await session.scalars(
                select(ChainProduct).where(ChainProduct.chain_id == chain.id, ChainProduct.code.in_(chunk))
            )
            chain_products.update({cp.code: cp for cp in rows})

        for code, record in by_code.items():
            product = products[product_identity(chain.name, record.barcode)]
            chain_product = chain_products.get(code)
            if chain_product is None:
                chain_product = ChainProduct(
                    chain_id=chain.id,
                    product_id=product.id,
                    code=code,
                    barcode=record.barcode,
                    name=record.name,
                    brand=record.brand,
                    uom=record.uom,
                    quantity=record.quantity,
                )
                session.add(chain_product)
                chain_products[code] = chain_product
                result.chain_products_created += 1
            elif self._refresh_chain_product(chain_product, record, product.id):
                result.chain_products_updated += 1

        await session.flush()
        return chain_products

    @staticmethod
    def _refresh_chain_product(chain_product: ChainProduct, record: PriceRecord, product_id: int) -> bool:
        changes = {
            "barcode": record.barcode,
            "name": record.name,
            "brand": record.brand,
            "uom": record.uom,
            "quantity": record.quantity,
            "product_id": product_id,
        }
        changed = False
        for attr, value in changes.items():
            if getattr(chain_product, attr) != value:
                setattr(chain_product, attr, value)
                changed = True
        return changed

    def _build_fact_rows(
        self,
        data: CrawlResult,
        day: date,
        stores: Dict[str, Store],
        chain_products: Dict[str, ChainProduct],
        result: ReconcileResult,
    ) -> List[dict]:
        latest: Dict[Tuple[str, str], PriceRecord] = {}
        for info, records in data.items():
            for record in records:
                key = (info.code, record.product_code)
                latest.pop(key, None)
                latest[key] = record

        created_at = utcnow()
        rows = []
        dropped = 0
        for (store_code, product_code), record in latest.items():
            store = stores.get(store_code)
            chain_product = chain_products.get(product_code)
            if store is None or chain_product is None:
                dropped += 1
                continue
            rows.append({
                "chain_product_id": chain_product.id,
                "store_id": store.id,
                "date": day,
                "regular_price": record.price,
                "price_per_unit": record.price_per_unit,
                "special_price": record.special_price,
                "best_price_30": record.best_price_30,
                "anchor_price": record.anchor_price,
                "created_at": created_at,
            })

        if dropped:
            logger.warning("Dropped unresolved price rows", chain=result.chain, dropped=dropped)
        result.records_dropped = dropped
        return rows

    async def _insert_facts(
        self,
        session: AsyncSession,
        rows: List[dict],
        cancel: CancellationToken,
        result: ReconcileResult,
    ) -> None:
        for batch in chunked(rows, self.batch_size):
            cancel.raise_if_cancelled()
            await self._insert_batch(session, batch)
            result.batch_sizes.append(len(batch))
            result.facts_inserted += len(batch)
            logger.debug("Price batch inserted", chain=result.chain, rows=len(batch), total=result.facts_inserted)

    async def _insert_batch(self, session: AsyncSession, batch: Iterable[dict]) -> None:
        """One multi-row INSERT ... VALUES statement"""
        await session.execute(insert(Price).values(list(batch)))
