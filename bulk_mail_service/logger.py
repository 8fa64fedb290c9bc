"""Logging helpers for the bulk mail service.

Every module logs below the ``bulk_mail`` logger, so one level setting
covers the API, the delivery pipeline and the scheduler.
"""

import logging
import os

ROOT_LOGGER = "bulk_mail"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the service logger, or the child ``bulk_mail.<name>``."""
    if not name or name == ROOT_LOGGER:
        return logging.getLogger(ROOT_LOGGER)
    if name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once per process.

    The level defaults to ``BMS_LOG_LEVEL`` (``INFO`` when unset). Called by
    the entry points only; library code just asks for loggers.
    """
    level_name = (level or os.getenv("BMS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # replace handlers installed by uvicorn or earlier calls
    )
