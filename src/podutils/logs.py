"""Logging setup for the entrypoint and sidecar executables."""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

LOG_LEVEL_ENV = "PODUTILS_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Send podutils records to stderr at the configured level."""

    level_name = (level or os.getenv(LOG_LEVEL_ENV, "INFO")).upper()
    resolved = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT, stream=sys.stderr)
    logging.getLogger("podutils").setLevel(resolved)


@contextmanager
def transient_log_file(prefix: str = "sidecar-logs-") -> Iterator[Path]:
    """Tee podutils log records into a temporary file for the block's duration.

    The file is removed when the block exits.
    """

    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".txt")
    os.close(fd)
    path = Path(name)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger = logging.getLogger("podutils")
    package_logger.addHandler(handler)
    try:
        yield path
    finally:
        package_logger.removeHandler(handler)
        handler.close()
        path.unlink(missing_ok=True)
