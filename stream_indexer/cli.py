"""
Command line entry point: stream-indexer <command>.
"""

import sys
import json
import signal
import asyncio
import logging
import argparse
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from stream_indexer.config.settings import Settings, load_settings
from stream_indexer.database.connection import DatabaseConnection
from stream_indexer.database.init_tables import init_database
from stream_indexer.database.state_manager import SyncStateManager
from stream_indexer.database.stream_store import StreamStore
from stream_indexer.exceptions import ChainConnectionError, ConfigurationError
from stream_indexer.indexer import StreamIndexer
from stream_indexer.models import StreamLabel
from stream_indexer.services.status_api import collect_status, create_app

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 1

CHAIN_COMMANDS = ("run", "backfill", "reconcile", "sync-streams")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stream-indexer", description="Payment stream event indexer")
    parser.add_argument("--config", default=None, help="Path to indexer_config.yaml (default: INDEXER_CONFIG or config/)")
    parser.add_argument("--env-file", default=None, help="Optional .env file to load")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the live indexer with periodic reconciliation")

    backfill_parser = sub.add_parser("backfill", help="Scan past blocks for StreamCreated events")
    backfill_parser.add_argument("--from-block", type=int, default=None)
    backfill_parser.add_argument("--to-block", type=int, default=None, help="Defaults to the chain head")
    backfill_parser.add_argument("--chunk-size", type=int, default=None)
    backfill_parser.add_argument("--lookback", type=int, default=None, help="Blocks back from head (ignored with --from-block)")

    reconcile_parser = sub.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile_parser.add_argument("--no-backfill", action="store_true", help="Skip the deep backfill")

    sub.add_parser("sync-streams", help="Create every stream below streamCount() missing from the mirror")

    tax_parser = sub.add_parser("mark-tax", help="Relabel all streams of an address as tax streams")
    tax_parser.add_argument("address", nargs="?", default=None, help="Defaults to label.tax_address")

    sub.add_parser("status", help="Print mirror status as JSON")
    sub.add_parser("init-db", help="Create database tables")
    sub.add_parser("serve-status", help="Serve the read-only status API")

    return parser


async def _run_service(indexer: StreamIndexer) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, indexer.request_stop)
    await indexer.run_forever()


async def _run_backfill(indexer: StreamIndexer, args: argparse.Namespace) -> int:
    async with indexer.connected():
        if args.from_block is None:
            result = await indexer.scanner.scan_recent(args.lookback)
        else:
            to_block = args.to_block
            if to_block is None:
                to_block = await indexer.chain.get_block_number()
            result = await indexer.scanner.scan(args.from_block, to_block, args.chunk_size)

    if result is None:
        return 1
    print(json.dumps({
        "from_block": result.from_block,
        "to_block": result.to_block,
        "chunks": result.chunks_total,
        "events_found": result.events_found,
        "streams_created": result.streams_created,
        "failed_chunks": result.failed_chunks
    }, indent=2))
    return 0 if result.complete else 1


async def _run_reconcile(indexer: StreamIndexer, backfill: bool) -> int:
    async with indexer.connected():
        result = await indexer.reconciler.run_once(backfill=backfill)
    print(json.dumps(result.as_metrics(), indent=2))
    return 0 if not result.streams_failed else 1


async def _run_sync_streams(indexer: StreamIndexer) -> int:
    async with indexer.connected():
        counts = await indexer.reconciler.sync_all_streams()
        await indexer.projector.refresh_stats(include_count=True)
    print(json.dumps(counts, indent=2))
    return 0 if not counts["failed"] else 1


def _chain_command(settings: Settings, args: argparse.Namespace, db: DatabaseConnection) -> int:
    indexer = StreamIndexer(settings, db=db)
    db.test_connection()
    db.create_all_tables()

    if args.command == "run":
        asyncio.run(_run_service(indexer))
        return 0
    if args.command == "backfill":
        return asyncio.run(_run_backfill(indexer, args))
    if args.command == "reconcile":
        return asyncio.run(_run_reconcile(indexer, not args.no_backfill))
    return asyncio.run(_run_sync_streams(indexer))


def _database_command(settings: Settings, args: argparse.Namespace, db: DatabaseConnection) -> int:
    store = StreamStore(db, settings.chain.contract_address or "")
    state_manager = SyncStateManager(db)

    if args.command == "init-db":
        result = init_database(db)
        print(json.dumps(result, indent=2))
        return 0 if result["status"] == "success" else 1

    if args.command == "mark-tax":
        address = args.address or settings.label.tax_address
        if not address:
            raise ConfigurationError("No address given and label.tax_address is not set")
        print(json.dumps(store.relabel_worker_streams(address, StreamLabel.TAX.value), indent=2))
        return 0

    if args.command == "status":
        print(json.dumps(collect_status(store, state_manager).model_dump(mode="json"), indent=2))
        return 0

    app = create_app(db, store, state_manager)
    uvicorn.run(app, host=settings.status_api.host, port=settings.status_api.port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(args.env_file)

    try:
        settings = load_settings(args.config)
        setup_logging(settings.logging.level)

        chain_command = args.command in CHAIN_COMMANDS
        if chain_command:
            settings.validate()

        db = DatabaseConnection(settings.get_database_url(), settings.database)
        try:
            if chain_command:
                return _chain_command(settings, args, db)
            return _database_command(settings, args, db)
        finally:
            db.dispose()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    except ChainConnectionError as e:
        logger.error(f"Could not connect to chain: {e}")
        return EXIT_CONNECTION_ERROR


if __name__ == "__main__":
    sys.exit(main())
