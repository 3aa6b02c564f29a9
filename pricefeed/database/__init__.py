"""
Database Module
"""
from .connection import (
    check_database_health,
    close_database,
    create_engine_for,
    create_session_factory,
    get_db,
    get_db_dependency,
    get_engine,
    get_session_factory,
    init_database,
)
from .models import (
    ApplicationLog,
    Base,
    Chain,
    ChainProduct,
    JobStatus,
    Price,
    Product,
    RequestSource,
    ScrapingJob,
    ScrapingJobLog,
    Store,
)

__all__ = [
    "check_database_health",
    "close_database",
    "create_engine_for",
    "create_session_factory",
    "get_db",
    "get_db_dependency",
    "get_engine",
    "get_session_factory",
    "init_database",
    "ApplicationLog",
    "Base",
    "Chain",
    "ChainProduct",
    "JobStatus",
    "Price",
    "Product",
    "RequestSource",
    "ScrapingJob",
    "ScrapingJobLog",
    "Store",
]
