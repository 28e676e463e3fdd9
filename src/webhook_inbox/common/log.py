import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(log_level: str = "INFO") -> None:
    """Replace loguru's default sink with a single stderr sink at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper(), format=LOG_FORMAT)
