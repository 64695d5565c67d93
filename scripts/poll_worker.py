#!/usr/bin/env python
"""
Background Poll Worker

Continuously polls due feeds for every tenant and runs each through the
ingestion pipeline (fetch, parse, upsert, features, clustering).

Usage:
    python scripts/poll_worker.py
    python scripts/poll_worker.py --once

Environment:
    POLL_WORKER_SLEEP_INTERVAL - Seconds between cycles (default: 300)
    POLL_WORKER_MAX_WORKERS - Thread pool size (default: 8)
    POLL_WORKER_BATCH_SIZE - Due feeds per tenant per cycle (default: 100)
"""

import logging
import os
import signal
import sys
import time

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from wrangler.services.pipeline import MAX_WORKERS, DUE_FEED_BATCH_SIZE, run_polling_cycle

# Configuration
SLEEP_INTERVAL = int(os.environ.get("POLL_WORKER_SLEEP_INTERVAL", "300"))

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logger = logging.getLogger('poll_worker')

# Graceful shutdown flag
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def run_worker_loop(once: bool = False):
    """Main worker loop - runs until a shutdown signal (or one cycle with --once)."""
    logger.info("=" * 60)
    logger.info("POLL WORKER STARTING")
    logger.info(f"Sleep interval: {SLEEP_INTERVAL}s")
    logger.info(f"Max workers: {MAX_WORKERS}")
    logger.info(f"Batch size: {DUE_FEED_BATCH_SIZE}")
    logger.info("=" * 60)

    cycles = 0
    total_new = 0

    while not shutdown_requested:
        try:
            result = run_polling_cycle(max_workers=MAX_WORKERS, batch_size=DUE_FEED_BATCH_SIZE)
            cycles += 1
            total_new += result.items_new
            logger.info(
                f"Cycle {cycles}: {result.feeds_due} due, {result.succeeded} ok, "
                f"{result.not_modified} not modified, {result.failed} failed, "
                f"{result.items_new} new items"
            )
        except Exception as e:
            logger.error(f"Worker loop error: {e}", exc_info=True)

        if once:
            break

        # Sleep in short steps so shutdown signals are honored promptly
        slept = 0
        while slept < SLEEP_INTERVAL and not shutdown_requested:
            time.sleep(1)
            slept += 1

    logger.info("=" * 60)
    logger.info("POLL WORKER SHUTTING DOWN")
    logger.info(f"Cycles run: {cycles}")
    logger.info(f"New items: {total_new}")
    logger.info("=" * 60)


def main():
    """Entry point for the poll worker."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        run_worker_loop(once='--once' in sys.argv[1:])
        return 0
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
