from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from .config import Settings


LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOG_FILE_PATH: Optional[Path] = None


def setup_logging(settings: Settings) -> Path:
    """Send server logs to stdout and a rotating file under the storage root.

    Calling it again with the same storage root is a no-op; a different root
    replaces the handlers so logs follow the active settings.
    """
    global _LOG_FILE_PATH
    log_dir = settings.storage_root / "logs"
    log_path = log_dir / "server.log"
    if _LOG_FILE_PATH == log_path:
        return log_path

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError(f"Failed to create log directory at {log_dir}: {exc}") from exc

    formatter = logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, encoding="utf-8", maxBytes=10 * 1024 * 1024, backupCount=3
    )
    file_handler.setFormatter(formatter)

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, handlers=[stream, file_handler], force=True)

    _LOG_FILE_PATH = log_path
    logging.getLogger(__name__).info("Logging initialized. Writing to %s", log_path)
    return log_path
