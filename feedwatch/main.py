#!/usr/bin/env python3
"""Feedwatch.

Monitors price feeds: fetches datasource prices and on-chain oracle
submissions, aggregates them, detects outliers and stalled feeds, and
sends windowed health summaries to owners and administrators.

Thresholds come from the environment (see README.md); runtime options come
from the command line with environment fallbacks.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.FeedMonitor import FeedMonitor
from .src.Notifier import LogNotifier, WebhookNotifier
from .src.Registry import StaticRegistry
from .src.Scheduler import Scheduler
from .src.Store import DEFAULT_DATABASE_URL, Store
from .src.Thresholds import Thresholds
from .src.fetchers import get_available_fetchers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="Feedwatch: price feed health monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available fetchers:
  {', '.join(get_available_fetchers())}

Examples:
  # One sweep against a local SQLite database, summaries to the log
  python -m feedwatch.main --registry-file registry.json --once

  # Continuous monitoring with webhook notifications
  python -m feedwatch.main --registry-file registry.json \\
      --interval 300 --webhook-url https://hooks.example.com/notify

Environment variables (CLI args take precedence):
  DATABASE_URL, REGISTRY_FILE, SWEEP_INTERVAL, FETCH_TIMEOUT,
  FETCH_CONCURRENCY, NOTIFY_WEBHOOK_URL, RPCURL_<chain_id>,
  API_KEY_<SOURCE>, and every threshold (OUTLIER_PCT, FRESHNESS_SEC, ...)
  with an optional TEST_ prefixed override.
""",
    )

    parser.add_argument(
        "--database-url",
        dest="database_url",
        type=str,
        help=f"SQLAlchemy database URL (default: {DEFAULT_DATABASE_URL})",
        default=os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
    )

    parser.add_argument(
        "--registry-file",
        dest="registry_file",
        type=str,
        help="JSON file with pairs, sources, participants and recipients",
        default=os.environ.get("REGISTRY_FILE"),
    )

    parser.add_argument(
        "--interval",
        type=int,
        help="Seconds between sweeps (minimum: 10, default: 300)",
        default=int(os.environ.get("SWEEP_INTERVAL") or "300"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for individual fetch requests in seconds (default: 10.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "10.0"),
    )

    parser.add_argument(
        "--fetch-concurrency",
        dest="fetch_concurrency",
        type=int,
        help="Maximum concurrent datasource fetches (default: 8)",
        default=int(os.environ.get("FETCH_CONCURRENCY") or "8"),
    )

    parser.add_argument(
        "--webhook-url",
        dest="webhook_url",
        type=str,
        help="Webhook receiving notifications (default: log only)",
        default=os.environ.get("NOTIFY_WEBHOOK_URL"),
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser


async def run(monitor: FeedMonitor, interval: int, once: bool) -> None:
    """Run one sweep, or sweep forever on the interval."""
    try:
        if once:
            await monitor.sweep()
            return
        scheduler = Scheduler("sweep", monitor.sweep, interval)
        await scheduler.run_forever()
    finally:
        await monitor.close()


def main() -> None:
    """Main entry point for the Feedwatch CLI."""
    parser = build_parser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.registry_file:
        parser.error("--registry-file (or REGISTRY_FILE) is required")

    if args.interval < 10:
        parser.error("--interval must be at least 10 seconds")

    if args.fetch_concurrency < 1:
        parser.error("--fetch-concurrency must be at least 1")

    if args.fetch_timeout <= 0:
        parser.error("--fetch-timeout must be positive")

    thresholds = Thresholds.load()
    thresholds.log_active()

    # Log configuration
    logger.info("=" * 60)
    logger.info("Feedwatch - Price Feed Health Monitor")
    logger.info("=" * 60)
    logger.info(f"Database:          {args.database_url}")
    logger.info(f"Registry:          {args.registry_file}")
    logger.info(f"Sweep Interval:    {args.interval}s" if not args.once else "Sweep Interval:    once")
    logger.info(f"Fetch Timeout:     {args.fetch_timeout}s")
    logger.info(f"Fetch Concurrency: {args.fetch_concurrency}")
    logger.info(f"Notifications:     {'webhook' if args.webhook_url else 'log only'}")
    logger.info(f"Window:            {thresholds.summary_window_minutes} min")
    logger.info("=" * 60)

    try:
        registry = StaticRegistry.from_file(args.registry_file)
        store = Store(args.database_url)
        store.create_all()
        notifier = WebhookNotifier(args.webhook_url) if args.webhook_url else LogNotifier()
        monitor = FeedMonitor(
            store,
            registry,
            thresholds,
            notifier=notifier,
            fetch_timeout=args.fetch_timeout,
            fetch_concurrency=args.fetch_concurrency,
        )
        asyncio.run(run(monitor, args.interval, args.once))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
