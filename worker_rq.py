#!/usr/bin/env python3
"""
Redis Queue (RQ) worker pool for processing vocabulary sheets in the background.

Usage:
    python worker_rq.py
"""

import logging
import sys

from jobs.queue import SheetQueue
from jobs.worker_pool import WorkerPool
from pipeline.config import load_config
from pipeline.errors import QueueUnavailable

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> int:
    config = load_config()

    try:
        queue = SheetQueue.from_config(config)
        logger.info("✅ Connected to Redis successfully")
    except QueueUnavailable as e:
        logger.error(f"❌ {e}")
        logger.error("   Make sure Redis is running and REDIS_URL is set correctly")
        return 1

    logger.info(f"⏳ Listening for jobs on '{queue.name}' queue...")
    logger.info("Press Ctrl+C to stop.")

    pool = WorkerPool(config)
    pool.start()
    pool.run_forever()
    return 0


if __name__ == '__main__':
    sys.exit(main())
