"""
Logging helpers.

get_logger() has no dependencies and can be imported from any module.
setup_logging() is called once at application startup.
"""
import logging
import sys

from acl_service.core import config


def get_logger(name: str) -> logging.Logger:
    """Return a named logger."""
    return logging.getLogger(name)


def setup_logging(log_level: str | None = None) -> None:
    """
    Configure the application logger.

    Args:
        log_level: Level name, defaults to LOG_LEVEL from config
    """
    level_name = (log_level or config.LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.INFO)

    app_logger = logging.getLogger("acl_service")
    app_logger.setLevel(level)

    if not app_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        app_logger.addHandler(handler)
        app_logger.propagate = False

    # Keep SQL noise out of application logs
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
