"""Logging with console verbosity, an optional log file and a per-thread last error."""

from __future__ import annotations

import os
import sys
import threading
import time
from datetime import datetime
from typing import IO, Optional

LOG_NOCONSOLE = -2
LOG_TIMESTAMPS = 4


class PloopError(Exception):
    """Base error of the package; ``code`` carries an optional exit status."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class _LoggerState:
    def __init__(self) -> None:
        self.enabled = True
        self.log_level = 3
        self.verbose_level = LOG_NOCONSOLE
        self.log_file: Optional[IO[str]] = None
        self.start: Optional[float] = None
        self.lock = threading.Lock()


_state = _LoggerState()
_tls = threading.local()


def _time_init() -> None:
    if _state.start is None:
        _state.start = time.time()


def _timestamp() -> str:
    if _state.verbose_level < LOG_TIMESTAMPS:
        return ""
    start = _state.start if _state.start is not None else time.time()
    elapsed = max(0.0, time.time() - start)
    seconds = int(elapsed)
    micros = int((elapsed - seconds) * 1_000_000)
    return f"[{seconds:2d}.{micros:06d}] "


def _date() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%dT%H:%M:%S%z")


def _emit(level: int, text: str) -> None:
    if _state.enabled:
        verbose = _state.verbose_level
        if verbose != LOG_NOCONSOLE and verbose >= level:
            stream = sys.stderr if level < 0 else sys.stdout
            stream.write(f"{_timestamp()}{text}\n")
            stream.flush()
        with _state.lock:
            if _state.log_level >= level and _state.log_file is not None:
                _state.log_file.write(f"{_date()} : {text}\n")
                _state.log_file.flush()
    if level < 0:
        _tls.last_error = text


def ploop_log(level: int, message: str) -> None:
    """Log ``message`` at ``level``; negative levels are errors."""
    _emit(level, message)


def ploop_err(err_no: int, message: str) -> None:
    """Log an error, appending the system message for ``err_no`` when non-zero."""
    if err_no:
        message = f"{message}: {os.strerror(err_no)}"
    _emit(-1, message)


def get_last_error() -> str:
    """Return the last error logged by the calling thread."""
    return getattr(_tls, "last_error", "")


def set_log_level(level: int) -> None:
    """Set the level up to which messages go to the log file."""
    _time_init()
    _state.log_level = level


def get_log_level() -> int:
    """Return the log file level."""
    return _state.log_level


def set_verbose_level(level: int) -> None:
    """Set the level up to which messages go to the console."""
    _time_init()
    _state.verbose_level = level


def set_log_file(fname: Optional[str]) -> None:
    """Append log output to ``fname``; ``None`` closes the current log file."""
    _time_init()
    new_file: Optional[IO[str]] = None
    if fname is not None:
        try:
            new_file = open(fname, "a", encoding="utf-8")
        except OSError as exc:
            ploop_err(exc.errno or 0, f"Can't open {fname}")
            raise PloopError(f"Can't open {fname}") from exc
    with _state.lock:
        if _state.log_file is not None:
            _state.log_file.close()
        _state.log_file = new_file