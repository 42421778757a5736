"""Cropflow: billing-request workflow for agricultural sales orders.

Importing the package configures the shared ``cropflow`` logger. Records go to
a rotating file and to stderr; the CLI keeps stdout for command output.
``CROPFLOW_LOG_DIR`` moves the log file and ``CROPFLOW_LOG_LEVEL`` changes the
threshold of both handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("CROPFLOW_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "cropflow.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(threadName)s | %(levelname)s | %(message)s"
DEFAULT_LOG_LEVEL = logging.INFO


def resolve_log_level(raw) -> int:
    """Map a level name or number to a ``logging`` level, INFO when unknown."""

    if raw is None or not str(raw).strip():
        return DEFAULT_LOG_LEVEL
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else DEFAULT_LOG_LEVEL


def _configure_logging() -> logging.Logger:
    """Configure package-wide logging with file and console handlers."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level(os.environ.get("CROPFLOW_LOG_LEVEL"))
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: cropflow cannot write its log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'cropflow' package (file=%s).", LOG_FILE)
