"""Logging for otsql sessions.

The terminal is shared with the prompt and query results, so the console
only shows what was asked for with ``--log-level`` (WARNING by default).
A configured log file is the session's own trail: it always receives the
INFO records for write-mode changes and audit-store fallbacks, and each
line names the process and thread, since several sessions and the
background audit sync may write to it.
"""
from __future__ import annotations
import logging
import sys
from typing import List, Optional

CONSOLE_FORMAT = '%(levelname)s: %(message)s'
FILE_FORMAT = '%(asctime)s %(process)d/%(threadName)s %(levelname)s %(name)s: %(message)s'

# Never more verbose than this in the log file
FILE_LEVEL = logging.INFO

# Libraries whose INFO output is noise in a session
QUIET_LOGGERS = ("duckdb", "psycopg")


def parse_level(level: str) -> int:
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric_level


def configure_logging(level: str = "WARNING", log_file: Optional[str] = None) -> List[logging.Handler]:
    """Install the console handler, and the file handler when ``log_file`` is set.

    Returns the installed handlers. An unwritable log file is reported on
    stderr and the session carries on with the console only.
    """
    console_level = parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers: List[logging.Handler] = [console]

    if log_file:
        try:
            trail = logging.FileHandler(log_file, encoding='utf-8')
        except OSError as e:
            print(f"Warning: could not open log file {log_file}: {e}", file=sys.stderr)
        else:
            trail.setLevel(min(console_level, FILE_LEVEL))
            trail.setFormatter(logging.Formatter(FILE_FORMAT))
            handlers.append(trail)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(min(h.level for h in handlers))
    for handler in handlers:
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, console_level))
    return handlers
