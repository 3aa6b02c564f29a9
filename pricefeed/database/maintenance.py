"""
Database Maintenance

Periodic statistics refresh and reindexing of the price fact table, which is
rewritten wholesale for every ingested (chain, date). Runs once at startup
and then every ``interval_hours``.
"""

import asyncio
import time
from typing import Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricefeed.config.settings import MaintenanceSettings
from pricefeed.database.models import Price

logger = structlog.get_logger(__name__)

_PRICES = Price.__tablename__

MAINTENANCE_STATEMENTS: Dict[str, List[str]] = {
    "postgresql": ["ANALYZE", f'REINDEX TABLE "{_PRICES}"'],
    "sqlite": ["ANALYZE", f'REINDEX "{_PRICES}"'],
}


class DatabaseMaintenance:
    """
    Background maintenance loop.

    Example:
        maintenance = DatabaseMaintenance(get_session_factory(), settings.maintenance)
        await maintenance.start()
        ...
        await maintenance.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[MaintenanceSettings] = None,
    ):
        settings = settings or MaintenanceSettings()
        self.session_factory = session_factory
        self.interval_seconds = settings.interval_hours * 3600
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Database maintenance scheduled", interval_hours=round(self.interval_seconds / 3600, 2))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except SQLAlchemyError as e:
                logger.error("Database maintenance failed", error=str(e), error_type=type(e).__name__)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> List[str]:
        """Run the maintenance statements for the connected backend"""
        start = time.perf_counter()
        async with self.session_factory() as session:
            async with session.begin():
                connection = await session.connection()
                backend = connection.dialect.name
                statements = MAINTENANCE_STATEMENTS.get(backend, [])
                for statement in statements:
                    await session.execute(text(statement))

        self.runs += 1
        if not statements:
            logger.warning("No maintenance statements for backend", backend=backend)
        else:
            logger.info(
                "Database maintenance completed",
                backend=backend,
                statements=len(statements),
                duration_seconds=round(time.perf_counter() - start, 3),
            )
        return statements
