"""
Database Log Sink

A logging handler that buffers records in memory and writes them to the
``application_logs`` table in batches. A background task flushes on an
interval, or early once the buffer holds ``buffer_size`` entries; stopping
the sink flushes whatever is left.

Records from the database layer itself are excluded so a flush never logs
into the buffer it is draining.
"""

import asyncio
import json
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricefeed.config.logging import SINK_HANDLER_PREFIX
from pricefeed.config.settings import DatabaseLogSettings
from pricefeed.database.models import ApplicationLog, utcnow

logger = structlog.get_logger(__name__)

# Keys added by the shared processors; everything else is a property
_RESERVED_KEYS = {"event", "level", "logger", "timestamp", "exception", "request_id"}

# Persisted level names
_LEVEL_NAMES = {
    logging.DEBUG: "Debug",
    logging.INFO: "Information",
    logging.WARNING: "Warning",
    logging.ERROR: "Error",
    logging.CRITICAL: "Critical",
}


def _json_safe(values: Dict[str, Any]) -> Optional[dict]:
    if not values:
        return None
    return json.loads(json.dumps(values, default=str))


class DatabaseLogHandler(logging.Handler):
    """
    Buffered logging handler backed by the application_logs table.

    Example:
        sink = DatabaseLogHandler(get_session_factory(), settings.db_logging)
        sink.install()
        await sink.start()
        ...
        await sink.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[DatabaseLogSettings] = None,
    ):
        settings = settings or DatabaseLogSettings()
        super().__init__(level=getattr(logging, settings.min_level.upper(), logging.INFO))
        self.set_name(f"{SINK_HANDLER_PREFIX}database")
        self.session_factory = session_factory
        self.buffer_size = max(1, settings.buffer_size)
        self.flush_interval = settings.flush_interval
        self.excluded: Sequence[str] = tuple(settings.excluded_categories) + (__name__,)

        self._buffer: Deque[Dict[str, Any]] = deque()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self.flushed = 0

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def is_excluded(self, category: str) -> bool:
        return any(category == prefix or category.startswith(prefix + ".") for prefix in self.excluded)

    def install(self, target: Optional[logging.Logger] = None) -> None:
        (target or logging.getLogger()).addHandler(self)

    def uninstall(self, target: Optional[logging.Logger] = None) -> None:
        (target or logging.getLogger()).removeHandler(self)

    def emit(self, record: logging.LogRecord) -> None:
        if self.is_excluded(record.name):
            return
        try:
            entry = self._to_entry(record)
        except (TypeError, ValueError):
            self.handleError(record)
            return

        self._buffer.append(entry)
        if len(self._buffer) >= self.buffer_size and self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def _to_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        exception = None
        correlation_id = None

        if isinstance(record.msg, dict):
            # Event dict handed over by structlog's ProcessorFormatter wrapper
            event = dict(record.msg)
            message = str(event.get("event", ""))
            exception = event.get("exception")
            correlation_id = event.get("request_id")
            properties = {k: v for k, v in event.items() if k not in _RESERVED_KEYS}
        else:
            message = record.getMessage()
            properties = {}

        if exception is None and record.exc_info:
            exception = logging.Formatter().formatException(record.exc_info)

        return {
            "timestamp": utcnow(),
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname.title()),
            "category": record.name[:200],
            "message": message,
            "exception": exception,
            "properties": _json_safe(properties),
            "correlation_id": str(correlation_id)[:100] if correlation_id else None,
        }

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._task = self._loop.create_task(self._run())
        logger.info("Database log sink started", flush_interval=self.flush_interval, buffer_size=self.buffer_size)

    async def stop(self) -> None:
        """Stop the flush loop and write the remaining entries"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._loop = None

        while self._buffer:
            if not await self.flush_pending():
                break

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            await self.flush_pending()

    async def flush_pending(self) -> int:
        """
        Write up to two buffers' worth of entries in one transaction.

        Returns the number of entries written. Entries of a failed flush are
        dropped.
        """
        batch: List[Dict[str, Any]] = []
        while self._buffer and len(batch) < self.buffer_size * 2:
            batch.append(self._buffer.popleft())
        if not batch:
            return 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(insert(ApplicationLog), batch)
        except SQLAlchemyError as e:
            logger.warning("Failed to flush logs to database", entries=len(batch), error=str(e))
            return 0

        self.flushed += len(batch)
        return len(batch)
