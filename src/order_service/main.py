"""
Order Service entry point

    python -m src.order_service.main

Loads configuration from the environment (.env supported), configures
logging and serves the API with uvicorn.
"""

import sys
from typing import Optional

import uvicorn
from loguru import logger

from .engine import ExecutionConfig, ExecutionEngine
from .app import create_app


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Send logs to stderr and, optionally, a daily rotated file"""
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_file:
        logger.add(log_file, rotation="1 day", retention="7 days", level=level)


def main() -> None:
    config = ExecutionConfig.from_env()
    configure_logging(config.log_level, config.log_file)

    engine = ExecutionEngine(config)
    app = create_app(engine)

    logger.info(f"Server running on http://{config.host}:{config.port}")
    logger.info(f"WebSocket endpoint: ws://{config.host}:{config.port}/api/orders/<order_id>/ws")
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
