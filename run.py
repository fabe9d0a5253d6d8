#!/usr/bin/env python3
"""
Payment Plan Engine Entry Point

Starts the FastAPI server with the payment plan engine.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from plan_engine.api import run_server
from plan_engine.config import get_config
from plan_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    logger.info(f"Starting payment plan engine on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {config.database_url}")

    try:
        run_server(host=config.api_host, port=config.api_port, workers=config.api_workers)
    except KeyboardInterrupt:
        logger.info("Shutting down payment plan engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
