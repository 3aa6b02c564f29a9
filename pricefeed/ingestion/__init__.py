"""
Price Ingestion Module
"""
from .job_log import JobLogEntry, JobLogService, JobStatistics
from .orchestrator import ALL_CHAINS, IngestionOrchestrator, IngestionResult
from .reconciler import ReconcileResult, Reconciler, rows_per_batch
from .scheduler import IngestionScheduler, IngestionTask

__all__ = [
    "JobLogEntry",
    "JobLogService",
    "JobStatistics",
    "ALL_CHAINS",
    "IngestionOrchestrator",
    "IngestionResult",
    "ReconcileResult",
    "Reconciler",
    "rows_per_batch",
    "IngestionScheduler",
    "IngestionTask",
]
