"""Process-wide logging: console plus an optional rotating log file."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config import CFG

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _build_file_handler(service_name: str) -> RotatingFileHandler:
    log_dir = Path(CFG.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        log_dir / f"{service_name}.log",
        maxBytes=max(1024, int(CFG.log_max_bytes)),
        backupCount=max(0, int(CFG.log_backup_count)),
        encoding="utf-8",
    )


def configure_logging(service_name: str) -> None:
    """Configure the root logger for the given service process.

    File output is skipped (with a warning) when the log directory cannot be
    created; console output is always installed.
    """
    level = getattr(logging, CFG.log_level, logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: OSError | None = None
    try:
        handlers.append(_build_file_handler(service_name))
    except OSError as error:
        file_error = error

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if file_error is not None:
        logging.getLogger(__name__).warning(
            "File logging disabled: failed to initialize %s (%s)",
            CFG.log_dir,
            file_error,
        )
