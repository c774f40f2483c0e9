"""Logging setup: root logger configured once from SYNTAXAUDIO_LOG_* env vars."""
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
ROTATE_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3


def _level(name: str, default: Optional[int] = logging.INFO) -> Optional[int]:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def parse_module_levels(raw: str) -> dict[str, int]:
    """``"syntaxaudio.engine=DEBUG,syntaxaudio.db=WARNING"`` -> {logger name: level}.

    Malformed entries are skipped.
    """
    levels = {}
    for entry in (part.strip() for part in raw.split(",")):
        name, sep, level_name = entry.partition("=")
        level = _level(level_name, None) if sep else None
        if name.strip() and level is not None:
            levels[name.strip()] = level
    return levels


def setup_logging() -> None:
    """Configure the root logger from env vars:

    - SYNTAXAUDIO_LOG_LEVEL: DEBUG/INFO/WARNING/ERROR (default INFO)
    - SYNTAXAUDIO_LOG_FILE: optional path, rotated at 5MB
    - SYNTAXAUDIO_LOG_MODULE_LEVELS: per-logger overrides
    """
    level = _level(os.getenv("SYNTAXAUDIO_LOG_LEVEL", "INFO"))
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = os.getenv("SYNTAXAUDIO_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=ROTATE_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name, module_level in parse_module_levels(os.getenv("SYNTAXAUDIO_LOG_MODULE_LEVELS", "")).items():
        logging.getLogger(name).setLevel(module_level)
