from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import LoggingSettings

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def setup_logging(settings: LoggingSettings) -> logging.Logger:
    """
    Configure the `hyperwa` logger tree: a console handler plus an optional
    rotating file handler.

    `HYPERWA_LOG_LEVEL` overrides the configured level. Calling this twice
    replaces the handlers instead of stacking them.
    """

    level_name = os.environ.get("HYPERWA_LOG_LEVEL", settings.level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger("hyperwa")
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.file:
        path = Path(settings.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            path,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        fh.setFormatter(formatter)
        root.addHandler(fh)

    root.propagate = False
    return root
