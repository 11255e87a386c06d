#!/usr/bin/env python3
"""Entry point for the retryable ticket tracer.

Traces a single transaction hash, runs a one-off index scan, or runs the
background indexer that keeps the ticket index up to date.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from retryable_tracer.config import TracerConfig
from retryable_tracer.event_decoder import EventDecoder
from retryable_tracer.gateway import LedgerGateway
from retryable_tracer.index_scanner import IndexerWorker, IndexScanner
from retryable_tracer.index_store import TicketIndexStore
from retryable_tracer.tracer import InvalidTxHashError, RetryableTracer
from retryable_tracer.utils.provider_registry import ProviderRegistry


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Retryable Ticket Tracer - Find where and why an L1 to L2 message failed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  NETWORK                - arbitrum, nova, sepolia or custom (default: sepolia)
  L1_RPC_URL             - L1 RPC endpoint (overrides the preset)
  L2_RPC_URL             - L2 RPC endpoint (overrides the preset)
  DEBUG_RPC_URL          - Endpoint supporting debug_traceTransaction
  INDEX_DB_PATH          - Ticket index database (default: data/tickets.db)
  INDEXER_LOOP_SECONDS   - Delay between indexer passes (default: 15)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--network",
        default=None,
        help="Network preset (default: NETWORK env or sepolia)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    trace_parser = subparsers.add_parser("trace", help="Trace a transaction hash")
    trace_parser.add_argument("tx_hash", help="0x-prefixed 32-byte transaction hash")

    scan_parser = subparsers.add_parser("scan", help="Index a block range once")
    scan_parser.add_argument("--start", type=int, required=True, help="First block")
    scan_parser.add_argument("--end", type=int, required=True, help="Last block")
    scan_parser.add_argument("--layer", choices=["L1", "L2"], default="L1", help="Layer to scan")

    subparsers.add_parser("worker", help="Run the background indexer")
    subparsers.add_parser("stats", help="Print index statistics")
    return parser


async def run(args: argparse.Namespace, config: TracerConfig) -> None:
    store = TicketIndexStore(config.indexer.db_path)

    if args.command == "stats":
        print(json.dumps({
            "stats": store.stats(),
            "recent": [ticket.to_dict() for ticket in store.list_recent()],
        }, indent=2))
        return

    registry = ProviderRegistry.from_urls(
        config.l1_rpc_url,
        config.l2_rpc_url,
        config.debug_rpc_url,
        request_timeout=config.query.rpc_timeout,
    )
    try:
        match args.command:
            case "trace":
                tracer = RetryableTracer(registry, store, config)
                result = await tracer.trace(args.tx_hash)
                print(json.dumps(result.to_dict(), indent=2))
            case "scan":
                scanner = IndexScanner(
                    LedgerGateway(registry, timeout=config.query.rpc_timeout),
                    store,
                    EventDecoder(),
                    chunk_size=config.indexer.log_chunk_size,
                    inbox_address=config.inbox_address,
                )
                if args.layer == "L1":
                    result = await scanner.scan_range(args.start, args.end)
                else:
                    result = await scanner.scan_l2_range(args.start, args.end)
                logger.info(f"Scan complete: {result.logs_seen} seen, {result.rows_inserted} inserted")
            case "worker":
                scanner = IndexScanner(
                    LedgerGateway(registry, timeout=config.query.rpc_timeout),
                    store,
                    EventDecoder(),
                    chunk_size=config.indexer.log_chunk_size,
                    inbox_address=config.inbox_address,
                )
                worker = IndexerWorker(scanner, config.indexer)
                try:
                    await worker.start()
                finally:
                    await worker.stop()
    finally:
        await registry.close()


async def main() -> None:
    """Main entry point for the tracer.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    load_dotenv()
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    try:
        config: TracerConfig = TracerConfig.from_env(network=args.network)
        config.log_config()
        await run(args, config)

    except InvalidTxHashError as e:
        logger.error(f"Invalid Input: {e}")
        logger.error("Transaction hashes must be 0x-prefixed 32-byte hex")
        sys.exit(1)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your arguments and environment variables:")
        logger.error("  - NETWORK: arbitrum, nova, sepolia or custom")
        logger.error("  - L1_RPC_URL / L2_RPC_URL: required for the custom network")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
