"""
Service Container

Builds the object graph shared by the HTTP surface and the scheduler. One
container is created per process by the application lifespan.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricefeed.caching import CacheProvider, create_cache_provider
from pricefeed.config.settings import Settings
from pricefeed.crawlers import Crawler, HttpFetcher, build_crawlers
from pricefeed.database.log_handler import DatabaseLogHandler
from pricefeed.database.maintenance import DatabaseMaintenance
from pricefeed.ingestion.job_log import JobLogService
from pricefeed.ingestion.orchestrator import IngestionOrchestrator
from pricefeed.ingestion.reconciler import Reconciler
from pricefeed.ingestion.scheduler import IngestionScheduler
from pricefeed.services.geocoding import AddressResolver, GoogleGeocoder, create_address_resolver
from pricefeed.services.notifications import Notifier, create_notifier

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    orchestrator: IngestionOrchestrator
    scheduler: IngestionScheduler
    job_log: JobLogService
    cache: Optional[CacheProvider] = None
    fetcher: Optional[HttpFetcher] = None
    address_resolver: Optional[AddressResolver] = None
    crawlers: Dict[str, Crawler] = field(default_factory=dict)
    log_sink: Optional[DatabaseLogHandler] = None
    maintenance: Optional[DatabaseMaintenance] = None

    @property
    def chains(self) -> List[str]:
        return self.orchestrator.chains

    async def start_background(self, maintenance: bool = True) -> None:
        """Start the log sink and the maintenance loop, when configured"""
        if self.log_sink is not None:
            self.log_sink.install()
            await self.log_sink.start()
        if maintenance and self.maintenance is not None:
            await self.maintenance.start()

    async def aclose(self) -> None:
        await self.scheduler.stop()
        if self.maintenance is not None:
            await self.maintenance.stop()
        if self.log_sink is not None:
            self.log_sink.uninstall()
            await self.log_sink.stop()
        if self.fetcher is not None:
            await self.fetcher.close()
        if isinstance(self.address_resolver, GoogleGeocoder):
            await self.address_resolver.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    crawlers: Optional[Dict[str, Crawler]] = None,
    notifier: Optional[Notifier] = None,
    address_resolver: Optional[AddressResolver] = None,
) -> ServiceContainer:
    """Wire crawlers, reconciler, job log, orchestrator and scheduler"""
    fetcher = None
    cache = None
    if crawlers is None:
        fetcher = HttpFetcher(
            timeout=settings.crawler.request_timeout,
            user_agent=settings.crawler.user_agent,
        )
        cache = create_cache_provider(settings)
        crawlers = build_crawlers(settings.crawler.sources, fetcher, cache, settings.cache.root)

    address_resolver = address_resolver or create_address_resolver(settings.geocoding)
    job_log = JobLogService(session_factory)
    reconciler = Reconciler(
        session_factory,
        address_resolver=address_resolver,
        max_parameters=settings.database.parameter_ceiling,
    )
    orchestrator = IngestionOrchestrator(
        crawlers,
        reconciler,
        job_log,
        notifier=notifier or create_notifier(settings.mail),
    )
    scheduler = IngestionScheduler(idle_interval=settings.scheduler.idle_interval)
    log_sink = DatabaseLogHandler(session_factory, settings.db_logging) if settings.db_logging.enabled else None
    maintenance = DatabaseMaintenance(session_factory, settings.maintenance) if settings.maintenance.enabled else None

    logger.info(
        "Services built",
        chains=orchestrator.chains,
        cache_backend=settings.cache.backend,
        batch_size=reconciler.batch_size,
    )
    return ServiceContainer(
        settings=settings,
        orchestrator=orchestrator,
        scheduler=scheduler,
        job_log=job_log,
        cache=cache,
        fetcher=fetcher,
        address_resolver=address_resolver,
        crawlers=crawlers,
        log_sink=log_sink,
        maintenance=maintenance,
    )
