"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the price pipeline.

- Provides argparse-based CLI
- Loads configuration from .env / environment, then CLI overrides
- Entry point for the application

============================================================
USAGE
============================================================
python -m orchestrator.cli
python -m orchestrator.cli --dry-run --log-level DEBUG
python -m orchestrator.cli --transport sse --pairs solana:So1...:SOL/USDC

============================================================
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import List, Optional

from core.exceptions import ConfigurationError
from data_ingestion.types import ResultSelection
from data_sources.models import FeedTransport

from .core import PricePipeline, new_correlation_id, setup_logging
from .models import PipelineConfig, load_environment, parse_pairs


__version__ = "1.0.0"


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="dex-price-streamer",
        description="Stream DEX pair prices, drop insignificant ticks and publish batches to a ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration:
  Every option can also be set in the environment or a .env file
  (PAIRS, FEED_TRANSPORT, BATCH_SIZE, ...). CLI flags win.

Examples:
  %(prog)s                                   # Use .env / environment
  %(prog)s --dry-run --log-level DEBUG       # Log ledger writes instead of sending
  %(prog)s --transport sse                   # Push feed instead of polling
        """
    )

    # --------------------------------------------------------
    # Feed Options
    # --------------------------------------------------------
    feed_group = parser.add_argument_group("Feed Options")

    feed_group.add_argument(
        "--pairs",
        type=str,
        metavar="CHAIN:ADDRESS:LABEL,...",
        help="Pairs to monitor (overrides PAIRS)",
    )

    feed_group.add_argument(
        "--transport",
        type=str,
        choices=[t.value for t in FeedTransport],
        help="Feed transport (overrides FEED_TRANSPORT)",
    )

    feed_group.add_argument(
        "--poll-interval-ms",
        type=int,
        metavar="MS",
        help="Polling period in milliseconds (overrides POLL_INTERVAL_MS)",
    )

    feed_group.add_argument(
        "--result-selection",
        type=str,
        choices=[s.value for s in ResultSelection],
        help="Which provider result to use when several match (overrides RESULT_SELECTION)",
    )

    # --------------------------------------------------------
    # Publishing Options
    # --------------------------------------------------------
    publish_group = parser.add_argument_group("Publishing Options")

    publish_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Log ledger writes instead of sending them",
    )

    publish_group.add_argument(
        "--batch-size",
        type=int,
        metavar="N",
        help="Flush once this many pairs are pending (overrides BATCH_SIZE)",
    )

    publish_group.add_argument(
        "--batch-interval-ms",
        type=int,
        metavar="MS",
        help="Flush at most this long after the first pending record (overrides BATCH_INTERVAL_MS)",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")

    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (overrides LOG_LEVEL)",
    )

    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        help="Logging format (overrides LOG_FORMAT)",
    )

    logging_group.add_argument(
        "--status-interval",
        type=float,
        metavar="SECONDS",
        help="Status log interval in seconds (overrides STATUS_INTERVAL_SECONDS)",
    )

    # --------------------------------------------------------
    # System Options
    # --------------------------------------------------------
    system_group = parser.add_argument_group("System Options")

    system_group.add_argument(
        "--env-file",
        type=str,
        metavar="PATH",
        help="Load this .env file instead of searching for one",
    )

    system_group.add_argument(
        "--shutdown-timeout",
        type=float,
        metavar="SECONDS",
        help="Bound on the final flush at shutdown (overrides SHUTDOWN_TIMEOUT_SECONDS)",
    )

    # --------------------------------------------------------
    # Version/Info
    # --------------------------------------------------------
    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the effective configuration and exit",
    )

    return parser


# ============================================================
# CLI CONFIGURATION BUILDER
# ============================================================

def build_config(args: argparse.Namespace, base: PipelineConfig) -> PipelineConfig:
    """
    Apply CLI overrides on top of the environment configuration.

    Raises:
        InvalidConfigError: If --pairs is malformed
    """
    overrides = {}

    if args.pairs is not None:
        overrides["pairs"] = parse_pairs(args.pairs)
    if args.transport is not None:
        overrides["transport"] = FeedTransport(args.transport)
    if args.poll_interval_ms is not None:
        overrides["poll_interval_ms"] = args.poll_interval_ms
    if args.result_selection is not None:
        overrides["result_selection"] = ResultSelection(args.result_selection)
    if args.dry_run:
        overrides["dry_run"] = True
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.batch_interval_ms is not None:
        overrides["batch_interval_ms"] = args.batch_interval_ms
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.log_format is not None:
        overrides["log_format"] = args.log_format
    if args.status_interval is not None:
        overrides["status_interval_seconds"] = args.status_interval
    if args.shutdown_timeout is not None:
        overrides["shutdown_timeout_seconds"] = args.shutdown_timeout

    return dataclasses.replace(base, **overrides)


def load_config(args: argparse.Namespace) -> PipelineConfig:
    load_environment(args.env_file)
    return build_config(args, PipelineConfig.from_env())


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(config: PipelineConfig) -> int:
    """
    Async main entry point.

    Returns:
        Exit code
    """
    pipeline = PricePipeline(config)
    try:
        return await pipeline.run()
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    if args.show_config:
        for key, value in config.to_dict().items():
            print(f"{key:24s} {value}")
        return 0

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    logger = setup_logging(config.log_level, config.log_format, new_correlation_id())
    logger.info(f"dex-price-streamer {__version__} starting")

    try:
        return asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
