"""File logging for mux processes."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import LoggingConfig
from .paths import log_dir

# glog layout: Lmmdd hh:mm:ss.uuuuuu pid file:line] msg
LOG_FORMAT = "%(levelname).1s%(asctime)s.%(msecs)03d000 %(process)d %(filename)s:%(lineno)d] %(message)s"
DATE_FORMAT = "%m%d %H:%M:%S"


def configure_logging(
    config: LoggingConfig | None = None,
    path: Path | None = None,
) -> Path:
    """Route the ``mux`` logger to a size-rotated file and return its path.

    The level is ``MUX_LOG`` if set, else ``config.level``. Calling this again
    replaces the previously installed handler.
    """
    config = config or LoggingConfig()
    log_file = path or log_dir() / "mux.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level_name = (os.getenv("MUX_LOG") or config.level).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    handler = RotatingFileHandler(
        log_file,
        maxBytes=config.max_file_size_mb * 1024 * 1024,
        backupCount=config.max_archives,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.set_name("mux-file")

    root = logging.getLogger("mux")
    for existing in list(root.handlers):
        if existing.get_name() == "mux-file":
            root.removeHandler(existing)
            existing.close()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    root.debug("Logging to %s at %s", log_file, logging.getLevelName(level))
    return log_file
