"""
Logging setup for branchgate.

All modules log through ``get_logger(__name__)``; sinks are configured once by
``setup_logging`` from the server or CLI entry point.
"""

import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

logger.configure(extra={"name": "branchgate"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure loguru sinks.

    Args:
        level: Minimum level for every sink (e.g. "DEBUG", "INFO").
        log_file: Optional path of a rotating log file.
    """
    level = level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if log_file:
        logger.add(
            log_file, level=level, format=LOG_FORMAT, rotation="10 MB", retention=2
        )


def get_logger(name: str):
    """Return a logger bound to the given module name."""
    return logger.bind(name=name)
