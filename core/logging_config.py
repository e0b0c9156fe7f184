import logging
from typing import Optional

LOGGER_NAME = "civic"

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure the root handler once and set the level of the `civic` tree."""
    if level is None:
        from .config import get_settings
        level = get_settings().LOG_LEVEL

    logging.basicConfig(format=_FORMAT)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    return logger
