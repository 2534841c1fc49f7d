"""
Logging setup.

Components log through loguru's shared ``logger``; this module only
decides where the records go.
"""

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)


def configure_logging(level: str = "INFO", serialize: bool = False) -> None:
    """Replace the default sink with a single stderr sink.

    Args:
        level: Minimum level to emit
        serialize: Emit one JSON record per line instead of text
    """
    logger.remove()
    if serialize:
        logger.add(sys.stderr, level=level.upper(), serialize=True, enqueue=True)
    else:
        logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True, enqueue=True)
