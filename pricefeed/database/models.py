"""
Database Models - Price Star Schema

Fact Tables:
- Price: one price observation per (chain product, store, date)

Dimension Tables:
- Chain: retail chain
- Store: physical store of a chain, keyed by (chain, code)
- Product: cross-chain product, keyed by barcode
- ChainProduct: a chain's own article, keyed by (chain, code)

Job Tables:
- ScrapingJob: durable "already ingested" marker per (chain, date)
- ScrapingJobLog: audit trail of every ingestion run

Operations Tables:
- ApplicationLog: persisted log entries
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER primary keys
BigIntKey = BigInteger().with_variant(Integer, "sqlite")
JsonColumn = JSON().with_variant(JSONB, "postgresql")
PriceColumn = Numeric(12, 4)

# Columns named `date` shadow the type inside class bodies
CalendarDate = date

CHAIN_NAME_LENGTH = 50
PRODUCT_CODE_LENGTH = 100
# Synthetic identities are chain + "_" + product code
IDENTITY_LENGTH = CHAIN_NAME_LENGTH + 1 + PRODUCT_CODE_LENGTH


def utcnow() -> datetime:
    """Naive UTC timestamp"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class JobStatus(str, Enum):
    """Ingestion job status"""
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class RequestSource(str, Enum):
    """Who asked for an ingestion run"""
    API = "API"
    SCHEDULED = "Scheduled"
    MANUAL = "Manual"
    SYSTEM = "System"


# =============================================================================
# DIMENSION TABLES
# =============================================================================

class Chain(Base):
    """Retail chain"""
    __tablename__ = "chains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(CHAIN_NAME_LENGTH), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    stores: Mapped[List["Store"]] = relationship(back_populates="chain")


class Store(Base):
    """
    Store Dimension Table

    Created on first sighting; address fields are refreshed on every sighting.
    Coordinates come from address resolution at creation time.
    """
    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, ForeignKey("chains.id"), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[Optional[str]] = mapped_column(String(200))
    address: Mapped[Optional[str]] = mapped_column(String(300))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    chain: Mapped["Chain"] = relationship(back_populates="stores")

    __table_args__ = (
        UniqueConstraint("chain_id", "code", name="uq_stores_chain_code"),
    )


class Product(Base):
    """
    Product Dimension Table

    Cross-chain product identity. `barcode` is the identity key; synthetic
    barcodes are prefixed with the chain name so they never collide.
    """
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    barcode: Mapped[str] = mapped_column(String(IDENTITY_LENGTH), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(300))
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    uom: Mapped[Optional[str]] = mapped_column(String(50))
    quantity: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ChainProduct(Base):
    """A chain's article as published in its price lists"""
    __tablename__ = "chain_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, ForeignKey("chains.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("products.id"), nullable=False)
    code: Mapped[str] = mapped_column(String(PRODUCT_CODE_LENGTH), nullable=False)

    barcode: Mapped[str] = mapped_column(String(PRODUCT_CODE_LENGTH + 1), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(300))
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    uom: Mapped[Optional[str]] = mapped_column(String(50))
    quantity: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("chain_id", "code", name="uq_chain_products_chain_code"),
        Index("ix_chain_products_product", "product_id"),
    )


# =============================================================================
# FACT TABLES
# =============================================================================

class Price(Base):
    """
    Price Fact Table

    Grain: one chain product in one store on one date. Rows for a
    (chain, date) are replaced wholesale on every ingestion run.
    """
    __tablename__ = "prices"

    id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    chain_product_id: Mapped[int] = mapped_column(Integer, ForeignKey("chain_products.id"), nullable=False)
    store_id: Mapped[int] = mapped_column(Integer, ForeignKey("stores.id"), nullable=False)
    date: Mapped[CalendarDate] = mapped_column(Date, nullable=False)

    regular_price: Mapped[Optional[Decimal]] = mapped_column(PriceColumn)
    price_per_unit: Mapped[Optional[Decimal]] = mapped_column(PriceColumn)
    special_price: Mapped[Optional[Decimal]] = mapped_column(PriceColumn)
    best_price_30: Mapped[Optional[Decimal]] = mapped_column(PriceColumn)
    anchor_price: Mapped[Optional[Decimal]] = mapped_column(PriceColumn)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("chain_product_id", "store_id", "date", name="uq_prices_product_store_date"),
        Index("ix_prices_store_date", "store_id", "date"),
    )


# =============================================================================
# JOB TABLES
# =============================================================================

class ScrapingJob(Base):
    """Durable summary of a completed (chain, date) ingestion"""
    __tablename__ = "scraping_jobs"

    id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, ForeignKey("chains.id"), nullable=False)
    date: Mapped[CalendarDate] = mapped_column(Date, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(100))
    is_forced: Mapped[bool] = mapped_column(Boolean, default=False)
    price_changes: Mapped[int] = mapped_column(Integer, default=0)
    job_log_id: Mapped[Optional[int]] = mapped_column(BigIntKey, ForeignKey("scraping_job_logs.id"))

    __table_args__ = (
        UniqueConstraint("chain_id", "date", name="uq_scraping_jobs_chain_date"),
    )


class ScrapingJobLog(Base):
    """
    Ingestion Run Log

    Created in RUNNING state, progress counters may be updated while running,
    then moved exactly once to COMPLETED, FAILED or CANCELLED.
    """
    __tablename__ = "scraping_job_logs"

    id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, ForeignKey("chains.id"), nullable=False)
    date: Mapped[CalendarDate] = mapped_column(Date, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    status: Mapped[JobStatus] = mapped_column(SQLEnum(JobStatus), nullable=False, default=JobStatus.RUNNING)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(100))
    request_source: Mapped[Optional[RequestSource]] = mapped_column(SQLEnum(RequestSource))
    is_forced: Mapped[bool] = mapped_column(Boolean, default=False)

    stores_processed: Mapped[Optional[int]] = mapped_column(Integer)
    products_found: Mapped[Optional[int]] = mapped_column(Integer)
    price_changes: Mapped[Optional[int]] = mapped_column(Integer)
    duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger)

    success_message: Mapped[Optional[str]] = mapped_column(String(500))
    error_message: Mapped[Optional[str]] = mapped_column(String(1000))
    error_stack_trace: Mapped[Optional[str]] = mapped_column(Text)
    job_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JsonColumn)

    chain: Mapped["Chain"] = relationship()

    __table_args__ = (
        Index("ix_scraping_job_logs_chain_date", "chain_id", "date", "started_at"),
        Index("ix_scraping_job_logs_status", "status", "started_at"),
    )


# =============================================================================
# OPERATIONS TABLES
# =============================================================================

class ApplicationLog(Base):
    """
    Persisted Application Log

    Log entries at or above the configured level, flushed in batches by
    DatabaseLogHandler. Correlation id is the HTTP request id when present.
    """
    __tablename__ = "application_logs"

    id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    exception: Mapped[Optional[str]] = mapped_column(Text)
    properties: Mapped[Optional[dict]] = mapped_column(JsonColumn)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index("ix_application_logs_level_timestamp", "level", "timestamp"),
        Index("ix_application_logs_category_timestamp", "category", "timestamp"),
        Index("ix_application_logs_timestamp", "timestamp"),
    )
