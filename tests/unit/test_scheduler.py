"""
Unit Tests - Single-Flight Scheduler
"""
import asyncio

import pytest
from sqlalchemy import func, select

from pricefeed.core.cancellation import CancellationToken
from pricefeed.core.exceptions import OperationCancelled
from pricefeed.database.models import Chain, JobStatus, Price, RequestSource, Store
from pricefeed.ingestion.orchestrator import IngestionOrchestrator
from pricefeed.ingestion.reconciler import Reconciler
from pricefeed.ingestion.scheduler import IngestionScheduler
from tests.conftest import TEST_DAY, FakeCrawler, RecordingNotifier, make_crawl_result


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
async def scheduler():
    scheduler = IngestionScheduler(idle_interval=0.05)
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


class TestIngestionScheduler:
    """Tests for single-flight execution with preemption"""

    async def test_runs_task_and_resolves_future(self, scheduler):
        async def task(token: CancellationToken) -> str:
            return "done"

        assert await asyncio.wait_for(scheduler.submit(task, "a"), 1) == "done"
        assert not scheduler.is_busy

    async def test_submit_preempts_running_task(self, scheduler):
        started = asyncio.Event()
        running = []

        async def long_task(token: CancellationToken) -> str:
            running.append("long")
            started.set()
            while True:
                token.raise_if_cancelled()
                await asyncio.sleep(0.01)

        async def short_task(token: CancellationToken) -> str:
            running.append("short")
            return "short"

        first = scheduler.submit(long_task, "long")
        await asyncio.wait_for(started.wait(), 1)

        second = scheduler.submit(short_task, "short")

        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(first, 1)
        assert await asyncio.wait_for(second, 1) == "short"
        assert running == ["long", "short"]

    async def test_pending_tasks_discarded_on_preemption(self, scheduler):
        started = asyncio.Event()
        ran = []

        async def blocker(token: CancellationToken) -> None:
            started.set()
            while not token.is_cancelled:
                await asyncio.sleep(0.01)
            token.raise_if_cancelled()

        def named(name):
            async def task(token: CancellationToken) -> str:
                ran.append(name)
                return name
            return task

        scheduler.submit(blocker, "blocker")
        await asyncio.wait_for(started.wait(), 1)

        # Each submission cancels the running blocker and drains older pending work
        middle = scheduler.submit(named("middle"), "middle")
        last = scheduler.submit(named("last"), "last")

        assert await asyncio.wait_for(last, 1) == "last"
        assert middle.cancelled()
        assert ran == ["last"]

    async def test_at_most_one_task_runs(self, scheduler):
        active = 0
        peak = 0

        async def task(token: CancellationToken) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                await asyncio.sleep(0.02)
                token.raise_if_cancelled()
            finally:
                active -= 1

        futures = [scheduler.submit(task, f"t{i}") for i in range(5)]
        await asyncio.wait_for(asyncio.gather(*futures, return_exceptions=True), 2)

        assert peak == 1

    async def test_failure_keeps_loop_alive(self, scheduler):
        async def failing(token: CancellationToken) -> None:
            raise RuntimeError("boom")

        async def ok(token: CancellationToken) -> int:
            return 1

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(scheduler.submit(failing, "failing"), 1)
        assert await asyncio.wait_for(scheduler.submit(ok, "ok"), 1) == 1

    async def test_stop_cancels_running_task(self):
        scheduler = IngestionScheduler(idle_interval=0.05)
        started = asyncio.Event()

        async def task(token: CancellationToken) -> None:
            started.set()
            while True:
                token.raise_if_cancelled()
                await asyncio.sleep(0.01)

        future = scheduler.submit(task, "task")
        await asyncio.wait_for(started.wait(), 1)
        await scheduler.stop()

        await wait_until(future.done)
        assert not scheduler.is_running
        assert scheduler.pending_count == 0

    async def test_status_properties(self, scheduler):
        started = asyncio.Event()

        async def task(token: CancellationToken) -> None:
            started.set()
            while not token.is_cancelled:
                await asyncio.sleep(0.01)

        scheduler.submit(task, "konzum@2025-07-01")
        await asyncio.wait_for(started.wait(), 1)

        assert scheduler.is_busy
        assert scheduler.current_task_name == "konzum@2025-07-01"


async def facts_for(session_factory, chain: str) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count())
            .select_from(Price)
            .join(Store, Price.store_id == Store.id)
            .join(Chain, Store.chain_id == Chain.id)
            .where(Chain.name == chain)
        )


class TestPreemptedIngestion:
    """Preemption through the real orchestrator and reconciler"""

    async def test_preempted_run_commits_nothing(self, session_factory, job_log, monkeypatch):
        reconciler = Reconciler(session_factory, max_parameters=90)
        orchestrator = IngestionOrchestrator(
            {
                "konzum": FakeCrawler("konzum", make_crawl_result("konzum", stores=2, products=8)),
                "spar": FakeCrawler("spar", make_crawl_result("spar", stores=1, products=2)),
            },
            reconciler,
            job_log,
            notifier=RecordingNotifier(),
        )

        # Hold the first run inside its transaction, after one batch
        in_batch = asyncio.Event()
        release = asyncio.Event()
        insert_batch = reconciler._insert_batch

        async def held_insert(session, batch):
            await insert_batch(session, batch)
            if not in_batch.is_set():
                in_batch.set()
                await release.wait()

        monkeypatch.setattr(reconciler, "_insert_batch", held_insert)

        def ingest(chain: str):
            async def task(token: CancellationToken):
                return await orchestrator.run(chain, TEST_DAY, token, request_source=RequestSource.API)
            return task

        scheduler = IngestionScheduler(idle_interval=0.05)
        try:
            first = scheduler.submit(ingest("konzum"), "konzum")
            await asyncio.wait_for(in_batch.wait(), 2)

            second = scheduler.submit(ingest("spar"), "spar")
            release.set()

            with pytest.raises(OperationCancelled):
                await asyncio.wait_for(first, 2)
            result = await asyncio.wait_for(second, 2)
        finally:
            await scheduler.stop()

        assert result.success
        assert result.total_changes == 2

        konzum_logs = await job_log.get_recent_jobs(chain="konzum")
        spar_logs = await job_log.get_recent_jobs(chain="spar")
        assert [log.status for log in konzum_logs] == [JobStatus.CANCELLED]
        assert [log.status for log in spar_logs] == [JobStatus.COMPLETED]

        assert await facts_for(session_factory, "konzum") == 0
        assert await facts_for(session_factory, "spar") == 2
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Price)) == 2

        assert not await job_log.is_completed("konzum", TEST_DAY)
        assert await job_log.is_completed("spar", TEST_DAY)
