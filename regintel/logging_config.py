"""Logging for the regintel CLI, worker and API entry points.

``configure_logging()`` attaches a console handler and a rotating
``<log_dir>/regintel.log`` to the ``regintel`` logger. Calling it again replaces the
handlers it added earlier, so entry points can reconfigure the level freely. Handlers
that belong to the host (uvicorn, pytest) are left alone.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "regintel"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE = "regintel.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Third-party loggers that are chatty at INFO during fetch and extraction
QUIET_LOGGERS = ("urllib3", "pdfminer", "httpx", "openai")


def _managed(handler: logging.Handler) -> logging.Handler:
    handler._regintel_managed = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(level: int = logging.INFO, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``regintel`` logger.

    Args:
        level: Level for regintel loggers
        log_dir: Directory for the rotating log file; defaults to ``REGINTEL_LOG_DIR``
            or ``logs``. The file is skipped when the directory cannot be created.

    Returns:
        The configured ``regintel`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_regintel_managed", False):
            logger.removeHandler(handler)
            handler.close()

    logger.addHandler(_managed(logging.StreamHandler()))

    directory = Path(log_dir or os.environ.get("REGINTEL_LOG_DIR", "").strip() or "logs")
    try:
        directory.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_managed(RotatingFileHandler(
            directory / LOG_FILE, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
        )))
    except OSError as e:
        logger.warning(f"File logging disabled ({directory}): {e}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
