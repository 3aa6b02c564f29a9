"""
Command Line Entry Point

Usage:
    Development:   pricefeed serve --dev
    Production:    pricefeed serve
    One-off run:   pricefeed ingest konzum --date 2025-07-01 --force
    Schema:        pricefeed init-db

The API process hosts the single-flight scheduler, so it always runs with a
single worker.
"""

import argparse
import asyncio
import sys
from datetime import date
from typing import List, Optional

import structlog

from pricefeed.config import get_settings
from pricefeed.config.logging import configure_logging
from pricefeed.container import build_services
from pricefeed.core.exceptions import PriceFeedError
from pricefeed.database.connection import close_database, get_session_factory, init_database
from pricefeed.database.models import RequestSource

logger = structlog.get_logger(__name__)


def run_server(dev: bool, port: Optional[int]) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pricefeed.main:app",
        host=settings.api_host,
        port=port or settings.api_port,
        reload=dev,
        workers=1,
        log_level="debug" if dev else settings.monitoring.log_level.lower(),
        access_log=True,
        proxy_headers=True,
        server_header=False,
    )


async def run_ingestion(chain: str, day: date, force: bool, initiated_by: Optional[str]) -> int:
    settings = get_settings()
    await init_database(create_tables=settings.database.create_tables)
    services = build_services(settings, get_session_factory())
    await services.start_background(maintenance=False)
    try:
        result = await services.orchestrator.run(
            chain,
            day,
            force=force,
            initiated_by=initiated_by,
            request_source=RequestSource.MANUAL,
        )
    except PriceFeedError as e:
        logger.error("Ingestion failed", chain=chain, date=day.isoformat(), error=str(e), context=e.context)
        return 1
    finally:
        await services.aclose()
        await close_database()

    if not result.success:
        logger.error("Ingestion rejected", chain=chain, error=result.error_message)
        return 1
    logger.info(result.message, total_changes=result.total_changes, job_log_ids=result.job_log_ids)
    return 0


async def create_schema() -> int:
    await init_database(create_tables=True)
    await close_database()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pricefeed", description="Retail price ingestion service")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the API server")
    serve.add_argument("--dev", action="store_true", help="Run in development mode with auto-reload")
    serve.add_argument("--port", type=int, default=None, help="Port to run on (default: API_PORT)")

    ingest = commands.add_parser("ingest", help="Run one ingestion and exit")
    ingest.add_argument("chain", help="Chain name or '*' for all chains")
    ingest.add_argument("--date", type=date.fromisoformat, default=None, help="Price date (default: today)")
    ingest.add_argument("--force", action="store_true", help="Re-ingest even if already completed")
    ingest.add_argument("--initiated-by", default="cli", help="Recorded in the job log")

    commands.add_parser("init-db", help="Create missing tables")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        run_server(args.dev, args.port)
        return 0

    configure_logging()
    if args.command == "ingest":
        return asyncio.run(run_ingestion(args.chain, args.date or date.today(), args.force, args.initiated_by))
    return asyncio.run(create_schema())


if __name__ == "__main__":
    sys.exit(main())
