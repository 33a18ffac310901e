"""Goods-receipt staging engine.

Stages purchase line items into a draft, keeps the draft recoverable across
sessions and commits the settled receipt to the catalog workbook.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RECEIPT_STAGING_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "receipt_staging.log"
LOG_LEVEL = os.environ.get("RECEIPT_STAGING_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the stderr handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

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
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to open receipt log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # The console only carries warnings so CLI output stays readable.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'receipt_staging' package.")
