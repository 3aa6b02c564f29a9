"""
Ingestion Orchestrator

Runs one ingestion request end to end for one chain or for all chains:
crawl, reconcile, record the run summary, clear the crawl cache, finish the
job log and notify.
"""

import asyncio
import time
import traceback
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from pricefeed.config.logging import job_context
from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import OperationCancelled, UnknownChain
from pricefeed.crawlers.base import Crawler
from pricefeed.database.models import RequestSource
from pricefeed.ingestion.job_log import JobLogService
from pricefeed.ingestion.reconciler import Reconciler
from pricefeed.services.notifications import LogNotifier, Notifier

logger = structlog.get_logger(__name__)

ALL_CHAINS = "*"
SKIPPED_MESSAGE = "Job already completed previously - skipped"


class IngestionResult(BaseModel):
    """Outcome of an ingestion request"""
    success: bool
    message: Optional[str] = None
    error_message: Optional[str] = None
    total_changes: int = 0
    job_log_ids: List[int] = Field(default_factory=list)


class IngestionOrchestrator:
    """
    Coordinates crawlers, the reconciler and the job log.

    Example:
        orchestrator = IngestionOrchestrator(crawlers, reconciler, job_log)
        result = await orchestrator.run("konzum", date(2025, 7, 1), CancellationToken())
    """

    def __init__(
        self,
        crawlers: Dict[str, Crawler],
        reconciler: Reconciler,
        job_log: JobLogService,
        notifier: Optional[Notifier] = None,
    ):
        self.crawlers = {name.lower(): crawler for name, crawler in crawlers.items()}
        self.reconciler = reconciler
        self.job_log = job_log
        self.notifier = notifier or LogNotifier()

    @property
    def chains(self) -> List[str]:
        return sorted(self.crawlers)

    def resolve(self, chain: str) -> Sequence[Crawler]:
        """Crawlers addressed by a chain token; raises UnknownChain"""
        token = chain.strip().lower()
        if token == ALL_CHAINS:
            return [self.crawlers[name] for name in self.chains]
        crawler = self.crawlers.get(token)
        if crawler is None:
            raise UnknownChain(f"Unknown chain: {chain}", context={"chain": chain})
        return [crawler]

    async def run(
        self,
        chain: str,
        day: date,
        cancel: Optional[CancellationToken] = None,
        force: bool = False,
        initiated_by: Optional[str] = None,
        request_source: RequestSource = RequestSource.SYSTEM,
    ) -> IngestionResult:
        if not chain or not chain.strip():
            return IngestionResult(success=False, error_message="Chain name cannot be null or empty.")

        crawlers = self.resolve(chain)
        cancel = cancel or CancellationToken()

        total_changes = 0
        log_ids: List[int] = []
        for crawler in crawlers:
            cancel.raise_if_cancelled()
            log_id, changes = await self._run_one(crawler, day, cancel, force, initiated_by, request_source)
            log_ids.append(log_id)
            total_changes += changes

        if chain.strip() == ALL_CHAINS:
            message = (
                f"Ingestion for all chains completed for {day.isoformat()}. "
                f"Total changes: {total_changes}. Job log IDs: {', '.join(map(str, log_ids))}"
            )
        else:
            message = (
                f"Ingestion for chain '{chain}' completed for {day.isoformat()}. "
                f"Total changes: {total_changes}. Job log ID: {log_ids[0] if log_ids else None}"
            )

        return IngestionResult(success=True, message=message, total_changes=total_changes, job_log_ids=log_ids)

    async def _run_one(
        self,
        crawler: Crawler,
        day: date,
        cancel: CancellationToken,
        force: bool,
        initiated_by: Optional[str],
        request_source: RequestSource,
    ) -> Tuple[int, int]:
        log_id = await self.job_log.start_job(crawler.chain, day, initiated_by, request_source, force)
        with job_context(crawler.chain, day, log_id):
            return await self._process(crawler, day, cancel, force, initiated_by, log_id)

    async def _process(
        self,
        crawler: Crawler,
        day: date,
        cancel: CancellationToken,
        force: bool,
        initiated_by: Optional[str],
        log_id: int,
    ) -> Tuple[int, int]:
        chain = crawler.chain

        if not force and await self.job_log.is_completed(chain, day):
            await self.job_log.complete_job(log_id, 0, SKIPPED_MESSAGE)
            logger.info("Ingestion already completed, skipping")
            return log_id, 0

        start = time.perf_counter()
        try:
            logger.info("Ingestion started", forced=force)
            results = await crawler.crawl(day, cancel)
            cancel.raise_if_cancelled()

            stores = len(results)
            products = sum(len(records) for records in results.values())
            await self.job_log.update_progress(log_id, stores_processed=stores, products_found=products)

            if not results:
                await self.job_log.complete_job(log_id, 0, f"No price data published for {chain} on {day.isoformat()}")
                logger.warning("No price data, nothing to reconcile")
                return log_id, 0

            reconciled = await self.reconciler.reconcile(chain, day, results, cancel)
            changes = reconciled.facts_inserted
            await self.job_log.update_progress(log_id, price_changes=changes)

            await self.job_log.record_completion(chain, day, log_id, changes, initiated_by, force)
            await crawler.clear_cache(day)

            duration = time.perf_counter() - start
            await self.job_log.complete_job(
                log_id,
                changes,
                f"Successfully processed {stores} stores with {changes} price changes",
                metadata={
                    "stores_processed": stores,
                    "products_found": products,
                    "duration_seconds": round(duration, 3),
                },
            )
            logger.info("Ingestion completed", stores=stores, products=products, changes=changes,
                        duration_seconds=round(duration, 2))

            await self._notify(
                f"Ingestion completed for [{chain} - {day.isoformat()}]",
                f"The ingestion job for chain '{chain}' on {day.isoformat()} has completed successfully.\n"
                f"Job Log ID: {log_id}\n"
                f"Initiated by: {initiated_by or 'System'}\n"
                f"Time taken: {duration:.3f}s\n"
                f"Stores processed: {stores}\n"
                f"Products found: {products}\n"
                f"Price changes: {changes}\n",
            )
            return log_id, changes

        except (OperationCancelled, asyncio.CancelledError) as e:
            logger.info("Ingestion cancelled", reason=str(e))
            await self.job_log.cancel_job(log_id, "Operation was cancelled by user or system")
            raise

        except Exception as e:
            logger.error("Ingestion failed", error=str(e), error_type=type(e).__name__)
            await self.job_log.fail_job(
                log_id,
                str(e) or type(e).__name__,
                traceback.format_exc(),
                metadata={
                    "exception_type": type(e).__name__,
                    "cause": str(e.__cause__) if e.__cause__ else None,
                },
            )
            await self._notify(
                f"Ingestion failed for [{chain} - {day.isoformat()}]",
                f"An error occurred during the ingestion job for chain '{chain}' on {day.isoformat()}.\n"
                f"Job Log ID: {log_id}\n"
                f"Initiated by: {initiated_by or 'System'}\n"
                f"Error: {e}\n",
            )
            raise

    async def _notify(self, subject: str, body: str) -> None:
        try:
            await self.notifier.notify(subject, body)
        except Exception as e:
            logger.error("Notification failed", subject=subject, error=str(e))
