#!/usr/bin/env python3
"""
Delete expired device locks.

Intended to run from cron; the API also exposes POST /admin/locks/cleanup.

Usage:
    python -m scripts.cleanup_locks
"""

import logging
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import init_db
from teams import cleanup_expired_locks

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    init_db()
    removed = cleanup_expired_locks()
    logger.info(f"Lock cleanup complete: {removed} removed")
    return removed


if __name__ == "__main__":
    main()
