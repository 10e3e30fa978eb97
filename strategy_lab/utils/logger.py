"""
Centralized logging setup for actions and entry points.

Library modules only ever do `log = logging.getLogger(__name__)`; handlers
are installed once, here, by whichever script is running.
"""

import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """
    Attach a stdout handler to the strategy_lab logger hierarchy.

    Calling this twice does not duplicate handlers.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or numeric level.

    Returns:
        The configured "strategy_lab" logger.
    """
    logger = logging.getLogger("strategy_lab")
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)

    return logger
