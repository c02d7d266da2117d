"""Exclusive file locks for disk descriptors and the global ploop lock."""

from __future__ import annotations

import errno
import fcntl
import os
import time
from typing import Optional

from .log import PloopError, ploop_err

PLOOP_LOCK_DIR = "/var/lock/ploop"
GLOBAL_LOCK_NAME = "ploop.lck"
LOCK_TIMEOUT = 60

_POLL_INTERVAL = 0.05


class LockError(PloopError):
    """A lock could not be created or taken."""


def _create_file(fname: str) -> None:
    try:
        fd = os.open(fname, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    except OSError as exc:
        ploop_err(exc.errno or 0, f"Can't create file {fname}")
        raise LockError(f"Can't create file {fname}") from exc
    os.close(fd)


def lock_file(fname: str, timeout: float = 0) -> int:
    """Take an exclusive lock on an existing file and return its descriptor.

    With ``timeout`` of zero the call waits indefinitely; otherwise it gives
    up after ``timeout`` seconds and raises :class:`LockError`.
    """
    try:
        fd = os.open(fname, os.O_RDWR | os.O_CLOEXEC)
    except OSError as exc:
        ploop_err(exc.errno or 0, f"Can't open lock file {fname}")
        raise LockError(f"Can't open lock file {fname}") from exc

    deadline: Optional[float] = time.monotonic() + timeout if timeout else None
    while True:
        try:
            if deadline is None:
                fcntl.flock(fd, fcntl.LOCK_EX)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return fd
        except BlockingIOError:
            remaining = deadline - time.monotonic() if deadline is not None else 0
            if remaining <= 0:
                os.close(fd)
                ploop_err(errno.EAGAIN, f"The {fname} is locked")
                raise LockError(f"The {fname} is locked") from None
            time.sleep(min(_POLL_INTERVAL, remaining))
        except OSError as exc:
            os.close(fd)
            ploop_err(exc.errno or 0, f"Error in flock({fname})")
            raise LockError(f"Error in flock({fname})") from exc


def unlock(fd: Optional[int]) -> None:
    """Release and close a descriptor returned by :func:`lock_file`."""
    if fd is None or fd == -1:
        return
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError as exc:
        ploop_err(exc.errno or 0, f"Can't flock({fd}, LOCK_UN)")
    finally:
        os.close(fd)


def disk_descriptor_lock_fname(xml_fname: str) -> str:
    """Return the lock file name that belongs to a disk descriptor file."""
    return f"{xml_fname}.lck"


def global_lock(lock_dir: str = PLOOP_LOCK_DIR) -> int:
    """Take the global lock, creating its directory and file when missing."""
    fname = os.path.join(lock_dir, GLOBAL_LOCK_NAME)
    if not os.path.exists(fname):
        try:
            os.mkdir(lock_dir, 0o700)
        except FileExistsError:
            pass
        except OSError as exc:
            ploop_err(exc.errno or 0, f"Failed to create {lock_dir}")
            raise LockError(f"Failed to create {lock_dir}") from exc
        _create_file(fname)
    return lock_file(fname, 0)