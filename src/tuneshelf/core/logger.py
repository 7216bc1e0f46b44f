"""Logging configuration and setup."""

import sys
from typing import Optional

from loguru import logger

from tuneshelf.core.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[task_id]}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[task_id]} | "
    "{name}:{function}:{line} - {message}"
)


def setup_logging(level: Optional[str] = None, log_name: str = "tuneshelf") -> None:
    """Route loguru output to stderr and a rotated file under ``DATA_DIR/logs``.

    Records carry a ``task_id`` extra; runs bind it with
    ``logger.contextualize(task_id=...)`` so interleaved sync and watch output
    can be told apart. Everything else logs as ``-``.

    Args:
        level: Overrides ``LOG_LEVEL`` (``--verbose`` passes DEBUG).
        log_name: File stem. The watch daemon writes to its own file so its
            chatter does not rotate sync history away.
    """
    level = (level or settings.LOG_LEVEL).upper()
    logger.remove()
    logger.configure(extra={"task_id": "-"})

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    log_file = settings.DATA_DIR / "logs" / f"{log_name}.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(log_file),
        rotation=settings.LOG_ROTATION,
        retention=settings.LOG_RETENTION,
        compression="zip",
        level=level,
        enqueue=True,  # Tag-reader threads and the watchdog thread log too
        backtrace=True,
        diagnose=False,
        format=FILE_FORMAT,
    )

    logger.debug(f"Logging to {log_file} at {level}")
