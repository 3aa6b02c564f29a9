"""
Ingestion API Endpoints

Queue or run price ingestion and inspect the job log.
"""

import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from pricefeed.container import ServiceContainer
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import OperationCancelled, PriceFeedError, UnknownChain
from pricefeed.database.models import RequestSource
from pricefeed.ingestion.job_log import JobLogEntry, JobStatistics
from pricefeed.ingestion.orchestrator import IngestionResult
from pricefeed.serving.api.dependencies import get_services

router = APIRouter()
logger = structlog.get_logger(__name__)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class IngestionRequest(BaseModel):
    """Ingestion request; date defaults to today"""
    chain: str = Field(..., min_length=1, description="Chain name or '*' for all chains")
    date: Optional[datetime.date] = None
    force: bool = False
    initiated_by: Optional[str] = Field(default=None, max_length=100)


class JobAccepted(BaseModel):
    """Response for a queued ingestion"""
    status: str = "queued"
    chain: str
    date: datetime.date
    force: bool
    preempted: bool


class SchedulerStatus(BaseModel):
    """Scheduler state"""
    busy: bool
    current_task: Optional[str]
    pending: int
    chains: List[str]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/jobs", response_model=JobAccepted, status_code=202)
async def enqueue_ingestion(
    request: IngestionRequest,
    services: ServiceContainer = Depends(get_services),
) -> JobAccepted:
    """
    Queue an ingestion run.

    A running ingestion is cancelled and any pending ones are discarded in
    favour of this request.
    """
    try:
        services.orchestrator.resolve(request.chain)
    except UnknownChain as e:
        raise HTTPException(status_code=409, detail=str(e))

    day = request.date or datetime.date.today()
    preempted = services.scheduler.is_busy

    async def task(token: CancellationToken) -> IngestionResult:
        return await services.orchestrator.run(
            request.chain,
            day,
            token,
            force=request.force,
            initiated_by=request.initiated_by,
            request_source=RequestSource.API,
        )

    services.scheduler.submit(task, name=f"{request.chain}@{day.isoformat()}")
    logger.info("Ingestion queued", chain=request.chain, date=day.isoformat(), force=request.force)

    return JobAccepted(chain=request.chain, date=day, force=request.force, preempted=preempted)


@router.post("/run", response_model=IngestionResult)
async def run_ingestion(
    request: IngestionRequest,
    services: ServiceContainer = Depends(get_services),
) -> IngestionResult:
    """Run an ingestion now and wait for its result."""
    day = request.date or datetime.date.today()
    try:
        result = await services.orchestrator.run(
            request.chain,
            day,
            CancellationToken(),
            force=request.force,
            initiated_by=request.initiated_by,
            request_source=RequestSource.MANUAL,
        )
    except UnknownChain as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OperationCancelled as e:
        raise HTTPException(status_code=409, detail=f"Ingestion cancelled: {e}")
    except PriceFeedError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if not result.success:
        raise HTTPException(status_code=400, detail=result.error_message)
    return result


@router.get("/jobs", response_model=List[JobLogEntry])
async def list_jobs(
    take: int = Query(50, ge=1, le=500),
    chain: Optional[str] = None,
    services: ServiceContainer = Depends(get_services),
) -> List[JobLogEntry]:
    """Most recent job logs, newest first."""
    return await services.job_log.get_recent_jobs(chain=chain, take=take)


@router.get("/statistics", response_model=JobStatistics)
async def job_statistics(
    from_date: Optional[datetime.date] = None,
    to_date: Optional[datetime.date] = None,
    chain: Optional[str] = None,
    services: ServiceContainer = Depends(get_services),
) -> JobStatistics:
    """Aggregates over finished job logs in the date range."""
    if from_date and to_date and from_date > to_date:
        raise HTTPException(status_code=400, detail="from_date must not be after to_date")
    return await services.job_log.get_statistics(from_date=from_date, to_date=to_date, chain=chain)


@router.get("/status", response_model=SchedulerStatus)
async def scheduler_status(services: ServiceContainer = Depends(get_services)) -> SchedulerStatus:
    return SchedulerStatus(
        busy=services.scheduler.is_busy,
        current_task=services.scheduler.current_task_name,
        pending=services.scheduler.pending_count,
        chains=services.chains,
    )
