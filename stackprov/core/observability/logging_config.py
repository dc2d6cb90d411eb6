"""
Logging setup for stackprov — console on stderr, optional install log.

Level precedence:
    --debug > --verbose > --quiet > STACKPROV_LOG_LEVEL > WARNING

The install log (STACKPROV_LOG_FILE) always uses the detailed format
and tags every line with the current run id, so one file can hold
several runs and still be grepped per run.
"""

from __future__ import annotations

import logging
import os
import sys

LEVEL_ENV = "STACKPROV_LOG_LEVEL"
FILE_ENV = "STACKPROV_LOG_FILE"
FILE_LEVEL_ENV = "STACKPROV_LOG_FILE_LEVEL"

# (max level, format, datefmt): first row whose level >= the console level wins
_CONSOLE_FORMATS = (
    (logging.DEBUG, "%(asctime)s.%(msecs)03d %(levelname)-5s %(filename)s:%(lineno)d %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s %(levelname)-5s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(levelname)s: %(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(run_id)s] %(name)s:%(lineno)d %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"


class RunIdFilter(logging.Filter):
    """Stamp ``record.run_id`` on every record passing through a handler."""

    def __init__(self, run_id: str = "-"):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


_run_filter = RunIdFilter()


def bind_run_id(run_id: str) -> None:
    """Tag subsequent install-log lines with ``run_id``."""
    _run_filter.run_id = run_id or "-"


def _console_format(level: int) -> tuple[str, str | None]:
    for threshold, fmt, datefmt in _CONSOLE_FORMATS:
        if level <= threshold:
            return fmt, datefmt
    return _CONSOLE_FORMATS[-1][1], _CONSOLE_FORMATS[-1][2]


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Replace the root logger's handlers.

    Args:
        level: Console level name.
        log_file: Install log path; the parent directory is created.
        log_file_level: Level for the install log (default: ``level``).
    """
    console_level = _parse_level(level)
    fmt, datefmt = _console_format(console_level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        parent = os.path.dirname(log_file)
        if parent:
            os.makedirs(parent, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.addFilter(_run_filter)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        root.addHandler(fh)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)

    logging.raiseExceptions = False


def resolve_level(debug: bool, verbose: bool, quiet: bool, env_level: str | None) -> str:
    """Pick the console level from CLI flags, falling back to the env var."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return env_level or "WARNING"


def configure_from_env(debug: bool = False, verbose: bool = False, quiet: bool = False) -> None:
    """CLI entry: combine flags with the STACKPROV_LOG_* variables."""
    setup_logging(
        level=resolve_level(debug, verbose, quiet, os.environ.get(LEVEL_ENV)),
        log_file=os.environ.get(FILE_ENV),
        log_file_level=os.environ.get(FILE_LEVEL_ENV),
    )


def _parse_level(level: str | None) -> int:
    """Level name to number; unknown names mean WARNING."""
    numeric = logging.getLevelName(level.upper()) if level else None
    return numeric if isinstance(numeric, int) else logging.WARNING
