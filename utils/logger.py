import logging
import os
import sys

LOGGER_NAME = "taskboard_billing"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logger(level: str | None = None) -> logging.Logger:
    """Configure the application logger once and return it.

    Called from the application entry point. Modules that only need to emit
    log lines use ``get_logger`` instead.
    """
    logger = logging.getLogger(LOGGER_NAME)
    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, resolved, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.propagate = True
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    if not name:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
