"""
Single-Flight Ingestion Scheduler

At most one ingestion task runs at a time. Submitting while a task runs
preempts it: the running task's cancellation token is signalled, every
pending task is discarded, and the new task is queued behind the one being
cancelled.

Example:
    scheduler = IngestionScheduler(idle_interval=1.0)
    await scheduler.start()
    future = scheduler.submit(lambda token: orchestrator.run("konzum", day, token))
    result = await future
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional

import structlog

from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import OperationCancelled

logger = structlog.get_logger(__name__)

IngestionTask = Callable[[CancellationToken], Awaitable[Any]]


def _retrieve_exception(future: asyncio.Future) -> None:
    # Callers may never await a fire-and-forget submission
    if not future.cancelled():
        future.exception()


@dataclass
class QueuedTask:
    task: IngestionTask
    future: asyncio.Future
    name: str = "ingestion"
    token: CancellationToken = field(default_factory=CancellationToken)


class IngestionScheduler:
    """Queue with a single consumer loop and preemption on submit"""

    def __init__(self, idle_interval: float = 1.0):
        self.idle_interval = idle_interval
        self._pending: Deque[QueuedTask] = deque()
        self._current: Optional[QueuedTask] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def is_busy(self) -> bool:
        return self._current is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def current_task_name(self) -> Optional[str]:
        return self._current.name if self._current else None

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        self._ensure_loop()
        logger.info("Ingestion scheduler started", idle_interval=self.idle_interval)

    async def stop(self) -> None:
        """Cancel the running task, discard pending ones and stop the loop"""
        if self._current is not None:
            self._current.token.cancel("Scheduler stopping")
        discarded = self._drain()

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info("Ingestion scheduler stopped", discarded=discarded)

    def submit(self, task: IngestionTask, name: str = "ingestion") -> asyncio.Future:
        """
        Queue a task, preempting any running one.

        Returns a future resolved with the task's result or exception.
        Discarded tasks have their futures cancelled.
        """
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)

        if self._current is not None:
            self._current.token.cancel(f"Preempted by {name}")
            discarded = self._drain()
            logger.info(
                "Preempting running ingestion",
                running=self._current.name,
                submitted=name,
                discarded=discarded,
            )

        self._pending.append(QueuedTask(task=task, future=future, name=name))
        self._ensure_loop()
        self._wakeup.set()
        return future

    def _drain(self) -> int:
        discarded = 0
        while self._pending:
            queued = self._pending.popleft()
            queued.future.cancel()
            discarded += 1
        return discarded

    def _ensure_loop(self) -> None:
        if not self.is_running:
            self._loop_task = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        while True:
            if not self._pending:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.idle_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            queued = self._pending.popleft()
            if queued.future.done():
                continue

            self._current = queued
            try:
                logger.info("Ingestion task started", task=queued.name)
                result = await queued.task(queued.token)
            except asyncio.CancelledError:
                queued.future.cancel()
                raise
            except OperationCancelled as e:
                logger.info("Ingestion task cancelled", task=queued.name, reason=str(e))
                if not queued.future.done():
                    queued.future.set_exception(e)
            except Exception as e:
                logger.error("Ingestion task failed", task=queued.name, error=str(e), error_type=type(e).__name__)
                if not queued.future.done():
                    queued.future.set_exception(e)
            else:
                logger.info("Ingestion task completed", task=queued.name)
                if not queued.future.done():
                    queued.future.set_result(result)
            finally:
                self._current = None
