#!/usr/bin/env python3
"""
Create the database schema and seed the example hunt.

Usage:
    python -m scripts.seed_hunt
    python -m scripts.seed_hunt --team acme summer rockets "The Rockets" ROCK42
"""

import logging
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import init_db, seed_example_hunt
from teams import create_team

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    """Seed the example hunt, or add a single team."""
    init_db()

    if len(sys.argv) > 1 and sys.argv[1] == "--team":
        if len(sys.argv) < 5:
            logger.error("Usage: --team ORG HUNT TEAM_ID [DISPLAY_NAME] [CODE]")
            sys.exit(1)
        org_id, hunt_id, team_id = sys.argv[2:5]
        display_name = sys.argv[5] if len(sys.argv) > 5 else None
        code = sys.argv[6] if len(sys.argv) > 6 else None
        team = create_team(org_id, hunt_id, team_id, display_name, code)
        logger.info(f"Created team {team.team_id} ({team.display_name})")
        return

    seed_example_hunt()
    logger.info("Example hunt seeded")


if __name__ == "__main__":
    main()
