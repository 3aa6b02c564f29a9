"""
API Routes Module
"""
from .health import router as health_router
from .ingestion import router as ingestion_router

__all__ = [
    "health_router",
    "ingestion_router",
]
