"""
Conveyor Runner - Main entry point.
"""

import logging
import os
import sys

from runner.src.config import get_settings
from runner.src.worker import get_redis_client, run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def main():
    """Main entry point."""
    settings = get_settings()

    logger.info("Starting Conveyor Runner")
    logger.info(f"Workspace root: {settings.workspace_root}")
    logger.info(f"Redis URL: {settings.redis_url}")
    logger.info(f"Configured tools: {', '.join(sorted(settings.tool_installations)) or 'none'}")

    try:
        os.makedirs(settings.workspace_root, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create workspace root: {e}")
        sys.exit(1)

    # Check the queue is reachable before taking jobs
    try:
        get_redis_client().ping()
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        sys.exit(1)

    # Start worker
    logger.info("Starting worker...")
    run_worker()

if __name__ == "__main__":
    main()
