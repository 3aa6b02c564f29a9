"""
Ingestion Job Log

Audit trail of ingestion runs. Every call runs in its own short transaction
so log writes survive a rolled-back reconciliation.

State machine: RUNNING -> COMPLETED | FAILED | CANCELLED (exactly once).
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricefeed.database.models import (
    Chain,
    JobStatus,
    RequestSource,
    ScrapingJob,
    ScrapingJobLog,
    utcnow,
)

logger = structlog.get_logger(__name__)

SUCCESS_MESSAGE_LENGTH = 500
ERROR_MESSAGE_LENGTH = 1000


def trim(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    return value[:max_length]


class JobLogEntry(BaseModel):
    """Read model of one ScrapingJobLog row"""
    id: int
    chain: str
    date: date
    status: JobStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    initiated_by: Optional[str] = None
    request_source: Optional[RequestSource] = None
    is_forced: bool = False
    stores_processed: Optional[int] = None
    products_found: Optional[int] = None
    price_changes: Optional[int] = None
    duration_ms: Optional[int] = None
    success_message: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class JobStatistics(BaseModel):
    """Aggregates over finished job logs"""
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    total_price_changes: int = 0
    last_successful_run: Optional[datetime] = None
    last_failed_run: Optional[datetime] = None


class JobLogService:
    """Persists the lifecycle of ingestion runs"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def ensure_chain(self, session: AsyncSession, chain: str) -> Chain:
        row = await session.scalar(select(Chain).where(Chain.name == chain))
        if row is None:
            row = Chain(name=chain)
            session.add(row)
            await session.flush()
        return row

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_job(
        self,
        chain: str,
        day: date,
        initiated_by: Optional[str] = None,
        request_source: RequestSource = RequestSource.SYSTEM,
        is_forced: bool = False,
    ) -> int:
        """Open a RUNNING log for (chain, date) and return its id"""
        async with self._transaction() as session:
            chain_row = await self.ensure_chain(session, chain)
            log = ScrapingJobLog(
                chain_id=chain_row.id,
                date=day,
                started_at=utcnow(),
                status=JobStatus.RUNNING,
                initiated_by=initiated_by,
                request_source=request_source,
                is_forced=is_forced,
            )
            session.add(log)
            await session.flush()
            log_id = log.id

        logger.info("Job started", job_log_id=log_id, chain=chain, date=day.isoformat(), forced=is_forced)
        return log_id

    async def update_progress(
        self,
        log_id: int,
        stores_processed: Optional[int] = None,
        products_found: Optional[int] = None,
        price_changes: Optional[int] = None,
    ) -> None:
        async with self._transaction() as session:
            log = await session.get(ScrapingJobLog, log_id)
            if log is None:
                logger.warning("Job log not found for progress update", job_log_id=log_id)
                return
            if stores_processed is not None:
                log.stores_processed = stores_processed
            if products_found is not None:
                log.products_found = products_found
            if price_changes is not None:
                log.price_changes = price_changes

    async def complete_job(
        self,
        log_id: int,
        price_changes: int,
        success_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._transaction() as session:
            log = await self._finish(session, log_id, JobStatus.COMPLETED)
            if log is None:
                return
            log.price_changes = price_changes
            log.success_message = trim(success_message, SUCCESS_MESSAGE_LENGTH)
            if metadata is not None:
                log.job_metadata = metadata
            duration_ms = log.duration_ms

        logger.info("Job completed", job_log_id=log_id, price_changes=price_changes, duration_ms=duration_ms)

    async def fail_job(
        self,
        log_id: int,
        error_message: str,
        stack_trace: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._transaction() as session:
            log = await self._finish(session, log_id, JobStatus.FAILED)
            if log is None:
                return
            log.error_message = trim(error_message, ERROR_MESSAGE_LENGTH)
            log.error_stack_trace = stack_trace
            if metadata is not None:
                log.job_metadata = metadata
            duration_ms = log.duration_ms

        logger.error("Job failed", job_log_id=log_id, error=error_message, duration_ms=duration_ms)

    async def cancel_job(self, log_id: int, reason: Optional[str] = None) -> None:
        async with self._transaction() as session:
            log = await self._finish(session, log_id, JobStatus.CANCELLED)
            if log is None:
                return
            log.error_message = trim(reason or "Job was cancelled", ERROR_MESSAGE_LENGTH)

        logger.info("Job cancelled", job_log_id=log_id, reason=reason)

    async def _finish(self, session: AsyncSession, log_id: int, status: JobStatus) -> Optional[ScrapingJobLog]:
        log = await session.get(ScrapingJobLog, log_id)
        if log is None:
            logger.warning("Job log not found", job_log_id=log_id, target_status=status.value)
            return None
        if log.status != JobStatus.RUNNING:
            logger.warning(
                "Job log already finished",
                job_log_id=log_id,
                status=log.status.value,
                target_status=status.value,
            )
            return None

        completed_at = utcnow()
        log.status = status
        log.completed_at = completed_at
        log.duration_ms = int((completed_at - log.started_at).total_seconds() * 1000)
        return log

    # -------------------------------------------------------------------------
    # Run summaries
    # -------------------------------------------------------------------------

    async def is_completed(self, chain: str, day: date) -> bool:
        """Whether a summary record marks (chain, date) as already ingested"""
        async with self._transaction() as session:
            job_id = await session.scalar(
                select(ScrapingJob.id)
                .join(Chain, ScrapingJob.chain_id == Chain.id)
                .where(Chain.name == chain, ScrapingJob.date == day)
            )
        return job_id is not None

    async def record_completion(
        self,
        chain: str,
        day: date,
        log_id: int,
        price_changes: int,
        initiated_by: Optional[str] = None,
        is_forced: bool = False,
    ) -> None:
        """Upsert the summary record for (chain, date)"""
        async with self._transaction() as session:
            chain_row = await self.ensure_chain(session, chain)
            log = await session.get(ScrapingJobLog, log_id)
            job = await session.scalar(
                select(ScrapingJob).where(ScrapingJob.chain_id == chain_row.id, ScrapingJob.date == day)
            )
            if job is None:
                job = ScrapingJob(chain_id=chain_row.id, date=day)
                session.add(job)

            job.started_at = log.started_at if log is not None else None
            job.completed_at = utcnow()
            job.initiated_by = initiated_by
            job.is_forced = is_forced
            job.price_changes = price_changes
            job.job_log_id = log_id

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_recent_jobs(self, chain: Optional[str] = None, take: int = 50) -> List[JobLogEntry]:
        query = select(ScrapingJobLog, Chain.name).join(Chain, ScrapingJobLog.chain_id == Chain.id)
        if chain:
            query = query.where(Chain.name == chain)
        query = query.order_by(ScrapingJobLog.started_at.desc(), ScrapingJobLog.id.desc()).limit(take)

        async with self._transaction() as session:
            rows = (await session.execute(query)).all()

        return [self._to_entry(log, chain_name) for log, chain_name in rows]

    async def get_statistics(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        chain: Optional[str] = None,
    ) -> JobStatistics:
        """Aggregate finished logs whose run date falls in [from_date, to_date]"""
        query = (
            select(ScrapingJobLog)
            .join(Chain, ScrapingJobLog.chain_id == Chain.id)
            .where(ScrapingJobLog.completed_at.is_not(None))
        )
        if from_date is not None:
            query = query.where(ScrapingJobLog.date >= from_date)
        if to_date is not None:
            query = query.where(ScrapingJobLog.date <= to_date)
        if chain:
            query = query.where(Chain.name == chain)

        async with self._transaction() as session:
            logs = list(await session.scalars(query))

        stats = JobStatistics(total_jobs=len(logs))
        if not logs:
            return stats

        successful = [log for log in logs if log.status == JobStatus.COMPLETED]
        failed = [log for log in logs if log.status == JobStatus.FAILED]
        durations = [log.duration_ms for log in logs if log.duration_ms is not None]

        stats.successful_jobs = len(successful)
        stats.failed_jobs = len(failed)
        stats.cancelled_jobs = sum(1 for log in logs if log.status == JobStatus.CANCELLED)
        stats.success_rate = round(len(successful) / len(logs) * 100, 2)
        stats.average_duration_ms = round(sum(durations) / len(durations), 2) if durations else 0.0
        stats.total_price_changes = sum(log.price_changes or 0 for log in logs)
        stats.last_successful_run = max((log.completed_at for log in successful), default=None)
        stats.last_failed_run = max((log.completed_at for log in failed), default=None)
        return stats

    @staticmethod
    def _to_entry(log: ScrapingJobLog, chain_name: str) -> JobLogEntry:
        return JobLogEntry(
            id=log.id,
            chain=chain_name,
            date=log.date,
            status=log.status,
            started_at=log.started_at,
            completed_at=log.completed_at,
            initiated_by=log.initiated_by,
            request_source=log.request_source,
            is_forced=log.is_forced,
            stores_processed=log.stores_processed,
            products_found=log.products_found,
            price_changes=log.price_changes,
            duration_ms=log.duration_ms,
            success_message=log.success_message,
            error_message=log.error_message,
            metadata=log.job_metadata,
        )
