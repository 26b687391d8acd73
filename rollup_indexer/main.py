"""Main entry point for the indexer."""

import asyncio
import json
import logging
import signal
import sys
from typing import Optional

import click
import structlog
from dotenv import load_dotenv

from rollup_indexer.chain_client import ChainClient
from rollup_indexer.config import settings
from rollup_indexer.database import db
from rollup_indexer.indexer import BatchIndexer, RunResult
from rollup_indexer.proof_classifier import ProofClassifier
from rollup_indexer.verifier_registry import VerifierRegistry

# Load environment variables
load_dotenv()

logger = structlog.get_logger(__name__)


def configure_logging():
    """Configure stdlib logging and the structlog processor chain."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def mask_database_url(url: str) -> str:
    """Hide the password of a database URL for logging."""
    if "@" not in url or "//" not in url.split("@")[0]:
        return url
    creds = url.split("@")[0].split("//", 1)[1]
    if ":" not in creds:
        return url
    user, _ = creds.split(":", 1)
    return url.replace(creds, f"{user}:***", 1)


class IndexerService:
    """Main service orchestrator."""

    def __init__(self, loop_mode: bool = False, create_tables: bool = True):
        self.loop_mode = loop_mode
        self.create_tables = create_tables
        self.shutdown_requested = False
        self.shutdown_event: Optional[asyncio.Event] = None
        self.last_result: Optional[RunResult] = None

    async def start(self) -> Optional[RunResult]:
        """Connect, then run one pass or keep running until shutdown."""
        # Bound to the running loop
        self.shutdown_event = asyncio.Event()
        if self.shutdown_requested:
            self.shutdown_event.set()

        logger.info(
            "Starting rollup indexer",
            rpc_url=settings.rpc_url,
            chain_id=settings.chain_id,
            inbox=settings.inbox_address,
            database_url=mask_database_url(settings.database_url),
            loop=self.loop_mode,
            sync_interval=settings.sync_interval
        )

        await db.connect()
        try:
            if self.create_tables:
                await db.create_tables()

            async with ChainClient() as client:
                if not await client.health_check():
                    raise RuntimeError("Cannot connect to L1 RPC endpoint")

                registry = VerifierRegistry.from_config(settings.verifier_config_path, client=client)
                indexer = BatchIndexer(db, client, ProofClassifier(registry))

                if not self.loop_mode:
                    self.last_result = await indexer.run()
                    return self.last_result

                while not self.shutdown_event.is_set():
                    try:
                        self.last_result = await indexer.run()
                    except Exception as e:
                        logger.error("Sync cycle failed", error=str(e))

                    try:
                        await asyncio.wait_for(self.shutdown_event.wait(), timeout=settings.sync_interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            await self.stop()

        return self.last_result

    async def stop(self):
        """Stop all services."""
        logger.info("Shutting down services")
        await db.disconnect()

    def handle_signal(self, sig, frame):
        """Handle shutdown signals."""
        logger.info("Received signal", signal=sig)
        self.shutdown_requested = True
        if self.shutdown_event is not None:
            self.shutdown_event.set()


async def reset_database():
    """Reset the database (drop and recreate tables)."""
    logger.warning("Resetting database")
    await db.connect()
    await db.drop_tables()
    await db.create_tables()
    await db.disconnect()


@click.command()
@click.option(
    "--loop",
    "loop_mode",
    is_flag=True,
    help="Keep indexing every SYNC_INTERVAL seconds until interrupted"
)
@click.option(
    "--reset",
    is_flag=True,
    help="Reset database before starting (WARNING: deletes all data)"
)
@click.option(
    "--start-from",
    type=int,
    help="Start indexing from specific block number"
)
@click.option(
    "--create-tables/--no-create-tables",
    default=True,
    help="Create missing tables on start-up"
)
def main(loop_mode: bool, reset: bool, start_from: Optional[int], create_tables: bool):
    """Rollup indexer - batch proposal, proof and verification ingestion."""
    configure_logging()

    if reset:
        click.confirm(
            "This will DELETE all indexed data. Are you sure?",
            abort=True
        )
        asyncio.run(reset_database())
        click.echo("Database reset complete")

    if start_from is not None:
        settings.start_block = start_from
        logger.info("Starting from block", start_block=start_from)

    service = IndexerService(loop_mode=loop_mode, create_tables=create_tables)

    # Setup signal handlers
    signal.signal(signal.SIGINT, service.handle_signal)
    signal.signal(signal.SIGTERM, service.handle_signal)

    try:
        result = asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)

    if not loop_mode and result is not None:
        click.echo(json.dumps(result.to_dict()))


if __name__ == "__main__":
    main()
