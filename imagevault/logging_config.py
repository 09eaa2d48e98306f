"""Logging setup for imagevault.

Diagnostics go to ``<data_dir>/logs/imagevault-YYYY-MM-DD.log``. Schema and
connection lifecycle events are additionally appended to a plain
``db-events-YYYY-MM-DD.log`` file so operators can grep one line per event.
"""

import logging
import os
from datetime import date, datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_data_dir() -> Path:
    """Base directory for imagevault runtime files."""
    env_dir = os.environ.get("IMAGEVAULT_DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".imagevault"


def _logs_dir(log_dir: Optional[str] = None) -> Path:
    path = Path(log_dir) if log_dir else get_data_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """Configure the ``imagevault`` logger with a stderr and a daily file handler.

    stderr only shows warnings unless ``level`` is DEBUG. Safe to call more
    than once.
    """
    logger = logging.getLogger("imagevault")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger

    log_file = _logs_dir(log_dir) / f"imagevault-{date.today().isoformat()}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)

    return logger


def log_database_event(event_type: str, details: str, backend: str = "sqlite") -> None:
    """Append one line to the database events log. Never raises."""
    try:
        event_file = _logs_dir() / f"db-events-{date.today().isoformat()}.log"
        timestamp = datetime.now().isoformat(timespec="seconds")
        with open(event_file, "a", encoding="utf-8") as fh:
            fh.write(f"{timestamp} | {event_type} | backend={backend} | {details}\n")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Could not write database event: {e}")


def log_migration(backend: str, operation: str, version: str, success: bool, duration_ms: int = 0):
    log_database_event(
        "migration",
        f"operation={operation}, version={version}, success={success}, duration_ms={duration_ms}",
        backend=backend,
    )


def log_connection_change(backend: str, change: str, latency_ms: Optional[float] = None):
    latency = "n/a" if latency_ms is None else f"{latency_ms:.1f}"
    log_database_event("connection", f"change={change}, latency_ms={latency}", backend=backend)
