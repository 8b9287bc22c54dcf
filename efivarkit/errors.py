"""Per-thread error trace, verbosity and debug log settings."""

from __future__ import annotations

import inspect
import sys
import threading
from dataclasses import dataclass
from typing import TextIO


class EfiError(OSError):
    """A failed library operation, carrying an errno value and a message."""

    def __init__(self, error: int, message: str) -> None:
        super().__init__(error, message)


@dataclass(frozen=True)
class ErrorEntry:
    """One recorded step of an error trace."""

    filename: str
    function: str
    line: int
    message: str | None
    error: int


class _ThreadState(threading.local):
    def __init__(self) -> None:
        self.entries: list[ErrorEntry] = []


_state = _ThreadState()
_verbose = 0
_errlog: TextIO | None = None
_log_level = 0


def error_set(
    filename: str,
    function: str,
    line: int,
    error: int,
    message: str | None,
) -> int:
    """Append an entry to this thread's error trace; return the new depth."""
    if filename is None or function is None:
        raise ValueError("filename and function are required")
    _state.entries.append(
        ErrorEntry(
            filename=str(filename),
            function=str(function),
            line=int(line),
            message=message,
            error=int(error),
        )
    )
    return len(_state.entries)


def error_get(n: int) -> ErrorEntry | None:
    """Return the n-th recorded entry, or None past the end of the trace."""
    if n < 0 or n >= len(_state.entries):
        return None
    return _state.entries[n]


def error_pop() -> None:
    """Drop the most recently recorded entry, if there is one."""
    if _state.entries:
        _state.entries.pop()


def error_clear() -> None:
    """Forget every entry recorded in this thread."""
    _state.entries.clear()


def error_entries() -> tuple[ErrorEntry, ...]:
    """Return this thread's error trace, oldest entry first."""
    return tuple(_state.entries)


def set_verbose(verbosity: int, errlog: TextIO | None = None) -> None:
    """Set the verbosity; replace the error log only when one is given."""
    global _verbose, _errlog
    _verbose = verbosity
    if errlog is not None:
        _errlog = errlog


def get_verbose() -> int:
    """Return the current verbosity."""
    return _verbose


def set_loglevel(level: int) -> None:
    """Set the verbosity at which debug messages become visible."""
    global _log_level
    _log_level = level


def get_loglevel() -> int:
    """Return the verbosity threshold for debug messages."""
    return _log_level


def _record(message: str, error: int = 0) -> int:
    """Record an entry naming the calling function and line."""
    frame = inspect.currentframe()
    caller = frame.f_back if frame is not None else None
    try:
        if caller is None:
            return error_set("<unknown>", "<unknown>", 0, error, message)
        code = caller.f_code
        return error_set(code.co_filename, code.co_name, caller.f_lineno, error, message)
    finally:
        del frame, caller


def _debug(message: str) -> None:
    """Write a debug message to the error log when verbose enough."""
    if _verbose < _log_level:
        return
    log = _errlog if _errlog is not None else sys.stderr
    log.write(message if message.endswith("\n") else message + "\n")
    log.flush()