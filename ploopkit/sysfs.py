"""Queries of running ploop devices through their sysfs attributes."""

from __future__ import annotations

import errno
import fcntl
import os
import re
import stat
import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .lock import PLOOP_LOCK_DIR, global_lock, unlock
from .log import PloopError, ploop_err

SECTOR_SHIFT = 9
PLOOP_COOKIE_SIZE = 64
BLKGETSIZE64 = 0x80081272

_INT_RE = re.compile(r"\s*([+-]?\d+)")
_DEVNUM_RE = re.compile(r"\s*([+-]?\d+):\s*([+-]?\d+)")
_U32_MASK = 0xFFFFFFFF


class SysfsError(PloopError):
    """A sysfs attribute is missing, unreadable or malformed."""


def _fail(message: str, err_no: int = 0) -> SysfsError:
    ploop_err(err_no, message)
    return SysfsError(message)


def _strip_dev(device: str) -> str:
    return device[5:] if device.startswith("/dev/") else device


def _read_line_quiet(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as fh:
        return fh.readline().rstrip("\n")


def _read_line(path: str) -> str:
    try:
        return _read_line_quiet(path)
    except OSError as exc:
        raise _fail(f"Can't open or read {path}", exc.errno or 0) from exc


def _parse_int(path: str, text: str) -> int:
    match = _INT_RE.match(text)
    if match is None:
        raise _fail(f"Unexpected format of {path}: {text}")
    return int(match.group(1))


def make_sysfs_dev_name(minor: int) -> str:
    """Return the sysfs name of the ploop device with the given minor number."""
    return f"ploop{minor >> 4}"


def get_size(device: str) -> int:
    """Return the size of a block device (or regular file) in 512-byte sectors."""
    try:
        fd = os.open(device, os.O_RDONLY)
    except OSError as exc:
        raise _fail(f"Can't open {device}", exc.errno or 0) from exc
    try:
        if stat.S_ISREG(os.fstat(fd).st_mode):
            size = os.fstat(fd).st_size
        else:
            buf = bytearray(8)
            fcntl.ioctl(fd, BLKGETSIZE64, buf, True)
            size = struct.unpack("=Q", buf)[0]
    except OSError as exc:
        raise _fail(f"Error in ioctl(BLKGETSIZE64) {device}", exc.errno or 0) from exc
    finally:
        os.close(fd)
    return size >> SECTOR_SHIFT


@dataclass
class SysfsTree:
    """The ``/sys/block`` hierarchy, relocatable for other roots."""

    root: str = "/sys/block"
    lock_dir: str = PLOOP_LOCK_DIR

    def _path(self, *parts: str) -> str:
        return os.path.join(self.root, *parts)

    def _read_dev_num(self, path: str) -> int:
        text = _read_line(path)
        match = _DEVNUM_RE.match(text)
        if match is None:
            raise _fail(f"Unexpected format of {path}: {text}")
        return os.makedev(int(match.group(1)), int(match.group(2)))

    def get_attr(self, device: str, attr: str) -> int:
        """Return an integer attribute from ``pstate``."""
        path = self._path(_strip_dev(device), "pstate", attr)
        return _parse_int(path, _read_line(path))

    def get_delta_attr(self, device: str, level: int, attr: str) -> int:
        """Return an integer attribute of the delta at ``level``."""
        path = self._path(_strip_dev(device), "pdelta", str(level), attr)
        return _parse_int(path, _read_line(path))

    def get_delta_attr_str(self, device: str, level: int, attr: str) -> str:
        """Return a string attribute of the delta at ``level``."""
        return _read_line(self._path(_strip_dev(device), "pdelta", str(level), attr))

    def find_delta_names(
        self, device: str, start_level: int, end_level: int
    ) -> Tuple[List[str], Optional[str]]:
        """Return delta images from ``end_level`` down to ``start_level`` and
        the format of the delta at ``start_level``."""
        dev = _strip_dev(device)
        count = max(0, end_level - start_level + 1)
        names = [""] * count
        fmt: Optional[str] = None
        for i in range(count):
            level = str(start_level + i)
            names[count - 1 - i] = _read_line(self._path(dev, "pdelta", level, "image"))
            if i == 0:
                raw = _read_line(self._path(dev, "pdelta", level, "format"))
                fmt = raw if raw in ("raw", "ploop1") else "unknown"
        return names, fmt

    def find_top_delta_name_and_format(self, device: str) -> Tuple[str, Optional[str]]:
        """Return the image and format of the top delta."""
        top = self.get_attr(device, "top")
        names, fmt = self.find_delta_names(device, top, top)
        return names[0], fmt

    def find_level_by_delta(self, device: str, delta: str) -> int:
        """Return the level at which the file ``delta`` is attached."""
        try:
            st1 = os.stat(delta)
        except OSError as exc:
            raise _fail(f"Can't stat {delta}", exc.errno or 0) from exc
        top = self.get_attr(device, "top")
        for level in range(top + 1):
            image = self.get_delta_attr_str(device, level, "image")
            try:
                st2 = os.stat(image)
            except OSError as exc:
                raise _fail(f"Can't stat {image}", exc.errno or 0) from exc
            if st1.st_dev == st2.st_dev and st1.st_ino == st2.st_ino:
                return level
        raise SysfsError(f"Delta {delta} is not attached to {device}")

    def get_dev_by_name(self, device: str) -> int:
        """Return the device number of a block device by its name."""
        return self._read_dev_num(self._path(os.path.basename(device), "dev"))

    def get_dev_start(self, path: str) -> int:
        """Return the start sector stored in a partition ``start`` file."""
        text = _read_line(path)
        match = _INT_RE.match(text)
        if match is None:
            raise _fail(f"Unexpected format of {path}: {text}")
        return int(match.group(1)) & _U32_MASK

    def dev_num2dev_start(self, device: str, dev_num: int) -> int:
        """Return the start sector of the device or partition numbered ``dev_num``."""
        dev = _strip_dev(device)
        if self._read_dev_num(self._path(dev, "dev")) == dev_num:
            return 0
        base = self._path(dev)
        try:
            entries = sorted(os.listdir(base))
        except OSError as exc:
            raise _fail(f"Can't opendir {base}", exc.errno or 0) from exc
        for name in entries:
            if len(name) <= len(dev) + 1 or not name.startswith(dev) or name[len(dev)] != "p":
                continue
            entry = os.path.join(base, name)
            try:
                mode = os.lstat(entry).st_mode
            except OSError as exc:
                raise _fail(f"Can't lstat {entry}", exc.errno or 0) from exc
            if not stat.S_ISDIR(mode):
                continue
            if self._read_dev_num(os.path.join(entry, "dev")) == dev_num:
                return self.get_dev_start(os.path.join(entry, "start"))
        raise _fail(f"Can't find entry under {base} with dev={dev_num:x}")

    def get_dev_by_delta(
        self, delta: str, topdelta: Optional[str] = None, component_name: Optional[str] = None
    ) -> List[str]:
        """Return devices whose base delta is ``delta``; empty if none.

        With ``component_name`` at most one device is returned.
        """
        if not os.path.exists(delta):
            return []
        delta_r = os.path.realpath(delta)
        lckfd = global_lock(self.lock_dir)
        try:
            try:
                entries = sorted(os.listdir(self.root))
            except OSError as exc:
                raise _fail(f"Can't opendir {self.root}", exc.errno or 0) from exc
            found: List[str] = []
            for name in entries:
                if not name.startswith("ploop"):
                    continue
                image = self._read_quiet(self._path(name, "pdelta", "0", "image"))
                if image is None or image != delta_r:
                    continue
                if topdelta is not None:
                    try:
                        top_image, _ = self.find_top_delta_name_and_format(name)
                    except SysfsError:
                        continue
                    if top_image != topdelta:
                        continue
                cookie = self._read_quiet(self._path(name, "pstate", "cookie"))
                if cookie is None:
                    continue
                if component_name is not None and (
                    component_name[:PLOOP_COOKIE_SIZE] != cookie[:PLOOP_COOKIE_SIZE]
                ):
                    continue
                found.append(f"/dev/{name}")
                if component_name is not None:
                    break
            return found
        finally:
            unlock(lckfd)

    @staticmethod
    def _read_quiet(path: str) -> Optional[str]:
        try:
            return _read_line_quiet(path)
        except OSError as exc:
            if exc.errno in (errno.ENOENT, errno.ENODEV):
                return None
            raise _fail(f"Can't open or read {path}", exc.errno or 0) from exc

    def find_dev(self, component_name: Optional[str], delta: str) -> Optional[str]:
        """Return the single device for ``delta`` and component, or ``None``."""
        devs = self.get_dev_by_delta(delta, None, component_name or "")
        return devs[0] if devs else None