"""
Logging configuration — one setup for the CLI and for run-proxy.

Every module logs through ``logging.getLogger(__name__)``. Projects are
applied on worker threads, so lines from different projects interleave;
``project_context`` tags every record emitted inside it with the project
name, and the verbose formats print that tag.

Level precedence:
    --debug  >  --verbose  >  --quiet  >  PROCON_LOG_LEVEL  >  WARNING

File output is opt-in through PROCON_LOG_FILE (and PROCON_LOG_FILE_LEVEL).
Under systemd, run-proxy logs to stderr, which lands in the journal.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

_FMT_MINIMAL = "%(project_tag)s%(message)s"
_FMT_VERBOSE = "%(asctime)s %(project_tag)s%(message)s"
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d %(project_tag)s%(message)s"
_FMT_FILE = "%(asctime)s %(levelname)-5s %(threadName)s %(name)s %(project_tag)s%(message)s"

_DATEFMT_SHORT = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS = ("urllib3", "asyncio")

_project: contextvars.ContextVar[str] = contextvars.ContextVar("procon_project", default="")


@contextmanager
def project_context(name: str) -> Iterator[None]:
    """Tag log records emitted in this block (on this thread) with ``name``."""
    token = _project.set(name)
    try:
        yield
    finally:
        _project.reset(token)


class ProjectFilter(logging.Filter):
    """Adds ``project_tag`` ("[web] " or "") to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = _project.get()
        record.project_tag = f"[{name}] " if name else ""
        return True


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get("PROCON_LOG_LEVEL", "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Console level name.
        log_file: Optional log file; defaults to PROCON_LOG_FILE.
        log_file_level: Level for the file; defaults to
            PROCON_LOG_FILE_LEVEL, then to ``level``.
    """
    numeric_level = _parse_level(level)
    log_file = log_file or os.environ.get("PROCON_LOG_FILE")
    log_file_level = log_file_level or os.environ.get("PROCON_LOG_FILE_LEVEL")

    if numeric_level <= logging.DEBUG:
        formatter = logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_SHORT)
    elif numeric_level <= logging.INFO:
        formatter = logging.Formatter(_FMT_VERBOSE, datefmt=_DATEFMT_SHORT)
    else:
        formatter = logging.Formatter(_FMT_MINIMAL)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(formatter)
    console.addFilter(ProjectFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)

    effective_level = numeric_level
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else numeric_level
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        fh.addFilter(ProjectFilter())
        root.addHandler(fh)

    root.setLevel(effective_level)

    if numeric_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Level name to number; anything unknown means WARNING."""
    numeric = getattr(logging, (level or "").upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
