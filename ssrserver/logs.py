"""Timestamped INFO/ERROR logging to stderr, a log file or syslog."""

from __future__ import annotations

import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import IO, Union

try:
    import syslog as _syslog
except ImportError:  # not available on every platform
    _syslog = None

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_COLORS = {"INFO": "\x1b[01;32m", "ERROR": "\x1b[01;35m"}
_RESET = "\x1b[0m"

When = Union[datetime, float, int, None]


@dataclass
class _Settings:
    use_syslog: bool = False
    use_tty: bool = False
    logfile: IO[str] | None = None
    owns_logfile: bool = False


_settings = _Settings()


def _stderr_is_tty() -> bool:
    try:
        return sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False


def configure(ident=None, use_syslog=False, logfile=None, use_tty=None):
    """Choose where log lines go.

    ``logfile`` may be a path (opened for writing, truncated) or an open text
    stream. ``use_tty`` of None means colour is used when stderr is a terminal.
    Syslog takes precedence over a log file, which takes precedence over stderr.
    """
    global _settings
    if _settings.owns_logfile and _settings.logfile is not None:
        _settings.logfile.close()

    new = _Settings()
    if use_syslog:
        if _syslog is None:
            raise OSError("syslog is not available on this platform")
        option = _syslog.LOG_CONS | _syslog.LOG_PID
        if ident is None:
            _syslog.openlog(logoption=option)
        else:
            _syslog.openlog(ident=str(ident), logoption=option)
        new.use_syslog = True

    if logfile is not None:
        if isinstance(logfile, (str, os.PathLike)):
            new.logfile = open(logfile, "w+", encoding="utf-8")
            new.owns_logfile = True
        else:
            new.logfile = logfile

    new.use_tty = _stderr_is_tty() if use_tty is None else bool(use_tty)
    _settings = new


def _timestamp(when: When) -> str:
    if when is None:
        return time.strftime(TIME_FORMAT, time.localtime())
    if isinstance(when, datetime):
        return when.strftime(TIME_FORMAT)
    return time.strftime(TIME_FORMAT, time.localtime(when))


def format_line(level, message, when=None, color=False):
    """Render one log line (without the trailing newline)."""
    name = str(level).upper()
    if name not in _COLORS:
        raise ValueError(f"unknown log level: {level!r}")
    stamp = _timestamp(when)
    if color:
        return f"{_COLORS[name]} {stamp} {name}: {_RESET}{message}"
    return f" {stamp} {name}: {message}"


def _emit(level: str, message: str) -> None:
    if _settings.use_syslog and _syslog is not None:
        priority = _syslog.LOG_INFO if level == "INFO" else _syslog.LOG_ERR
        _syslog.syslog(priority, message)
        return
    if _settings.logfile is not None:
        _settings.logfile.write(format_line(level, message) + "\n")
        _settings.logfile.flush()
        return
    stream = sys.stderr
    stream.write(format_line(level, message, color=_settings.use_tty) + "\n")
    stream.flush()


def info(message):
    """Log an informational message."""
    _emit("INFO", str(message))


def error(message):
    """Log an error message."""
    _emit("ERROR", str(message))