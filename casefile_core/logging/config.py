# =============================================================================
# casefile_core/logging/config.py
# Logging Configuration for the CaseFile field client
# =============================================================================

from __future__ import annotations
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_LOG_DIR = Path("logs")

# Transport libraries that log every request at INFO
NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "supabase", "postgrest", "hpack")


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    log_to_file: bool = True,
) -> Optional[Path]:
    """
    Configure logging for the field client.

    Field devices keep one log file per day next to the local data so a
    support person can collect it together with the database.

    Args:
        level: Root logging level
        log_dir: Directory for daily files (default: ./logs)
        log_to_file: Also write casefile_YYYY-MM-DD.log

    Returns:
        Path of the log file, or None when logging to stdout only
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    log_path = None

    if log_to_file:
        directory = Path(log_dir) if log_dir is not None else DEFAULT_LOG_DIR
        directory.mkdir(parents=True, exist_ok=True)
        log_path = directory / f"casefile_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("casefile_core").info(
        f"Logging initialized ({logging.getLevelName(level)})"
        + (f", writing to {log_path}" if log_path else "")
    )
    return log_path


def get_logger(name: str) -> logging.Logger:
    """
    Usage:
        from casefile_core.logging import get_logger
        logger = get_logger(__name__)
    """
    return logging.getLogger(name)


class LogContext:
    """
    Context manager timing one engine operation.

    Keyword arguments identify what the operation works on and are appended
    to every line, so a reconcile, a sync pass and a single answer save can
    be told apart in one log file.

    Usage:
        with LogContext(logger, "Saving answers", form=10, question=101):
            ...
        # Saving answers [form=10 question=101]... started
        # Saving answers [form=10 question=101]... completed (0.01s)

    Frequent operations pass level=logging.DEBUG so they stay out of INFO
    logs; failures are always logged at ERROR with the traceback.
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO, **context):
        self.logger = logger
        self.level = level
        self.label = operation
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            self.label = f"{operation} [{pairs}]"
        self.start_time = None
        self.elapsed: Optional[float] = None

    def __enter__(self) -> LogContext:
        self.start_time = time.perf_counter()
        self.logger.log(self.level, f"{self.label}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.perf_counter() - self.start_time

        if exc_type is None:
            self.logger.log(self.level, f"{self.label}... completed ({self.elapsed:.2f}s)")
        else:
            self.logger.error(
                f"{self.label}... failed ({self.elapsed:.2f}s): {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb),
            )

        return False
