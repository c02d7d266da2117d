"""File system helpers that drive parted, mkfs and the e2fsprogs tools."""

from __future__ import annotations

import enum
import errno
import fcntl
import os
import re
import struct
import subprocess
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .gpt import get_partition_device_name
from .log import PloopError, ploop_err, ploop_log

SECTOR_SIZE = 512
SECTOR_SHIFT = 9
PLOOP_MAX_FS_SIZE = 16 * 1024 ** 4
DEF_PATH = "/sbin:/bin:/usr/sbin:/usr/bin:/usr/local/sbin:/usr/local/bin"

EXT4_IOC_SET_RSV_BLOCKS = 0x4008662C
_U32 = 0xFFFFFFFF


def _e2fs_progs(name: str) -> List[str]:
    """Candidate locations of an e2fs utility, most preferred first."""
    return [
        f"/usr/libexec/{name}2fs",
        f"/sbin/{name}4fs",
        f"/sbin/{name}2fs",
        f"{name}2fs",
    ]


TUNE2FS_PROGS = _e2fs_progs("tune")
RESIZE2FS_PROGS = _e2fs_progs("resize")
DUMPE2FS_PROGS = _e2fs_progs("dumpe")


class FsError(PloopError):
    """A file system utility failed or gave unusable output."""


class E2fsckFlag(enum.IntFlag):
    """Options passed to fsck.ext4."""

    NONE = 0
    PREEN = 1
    FORCE = 2


@dataclass
class Dumpe2fsData:
    """Block figures reported by ``dumpe2fs -h``."""

    block_count: int
    block_free: int
    block_size: int


def _fail(message: str, err_no: int = 0) -> FsError:
    ploop_err(err_no, message)
    return FsError(message)


def _env(**extra: str) -> dict:
    env = dict(os.environ)
    env["PATH"] = DEF_PATH
    env.update(extra)
    return env


def _run_prg(argv: Sequence[str], quiet: bool = False) -> int:
    """Run a program and return its exit status; raise if it cannot start."""
    ploop_log(1, "Running: " + " ".join(argv))
    try:
        proc = subprocess.run(
            list(argv),
            env=_env(),
            stdout=subprocess.DEVNULL if quiet else None,
            check=False,
        )
    except OSError as exc:
        raise _fail(f"Can't exec {argv[0]}", exc.errno or 0) from exc
    if proc.returncode < 0:
        ploop_err(0, f"Command {argv[0]} killed by signal {-proc.returncode}")
    elif proc.returncode:
        ploop_err(0, f"Command {argv[0]} exited with code {proc.returncode}")
    return proc.returncode


def get_prog(progs: Sequence[str]) -> str:
    """Return the first executable of ``progs``, or the last one as a default."""
    for prog in progs:
        if os.access(prog, os.X_OK):
            return prog
    return progs[-1]


def create_gpt_partition(device: str, size: int, blocksize: int) -> None:
    """Label ``device`` with GPT and one partition aligned to ``blocksize`` sectors."""
    start = blocksize
    end = (size - blocksize) // blocksize * blocksize
    if size <= start + blocksize:
        raise _fail(f"Image size should be greater than {start}")
    argv = [
        "parted",
        "-s",
        device,
        "mklabel gpt mkpart primary",
        f"{start << SECTOR_SHIFT}b",
        f"{(end << SECTOR_SHIFT) - 1}b",
    ]
    try:
        rc = _run_prg(argv)
    except FsError:
        rc = -1
    if rc:
        raise _fail("Failed to create partition")


def make_fs(device: str, fstype: str, fsblocksize: int = 0) -> None:
    """Create a journalled file system on the device's partition and tune it."""
    fsblocksize = fsblocksize or 4096
    try:
        part_device = get_partition_device_name(device)
    except PloopError as exc:
        raise FsError(f"Can't find partition of {device}") from exc

    max_online_resize = min(PLOOP_MAX_FS_SIZE // fsblocksize, _U32)
    mkfs_argv = [
        "mkfs",
        "-t",
        fstype,
        "-j",
        f"-b{fsblocksize}",
        f"-Elazy_itable_init,resize={max_online_resize}",
        "-Jsize=128",
        "-i16384",
        part_device,
    ]
    if _run_prg(mkfs_argv):
        raise FsError(f"mkfs failed on {part_device}")

    tune_argv = [
        get_prog(TUNE2FS_PROGS),
        "-ouser_xattr,acl",
        "-c0",
        "-i0",
        "-eremount-ro",
        part_device,
    ]
    if _run_prg(tune_argv):
        raise FsError(f"tune2fs failed on {part_device}")


def tune_fs(balloonfd: int, device: str, size_sec: int) -> None:
    """Reserve 5% of ``size_sec`` sectors for root; failures are only logged."""
    try:
        bsize = os.fstatvfs(balloonfd).f_bsize
    except OSError as exc:
        ploop_err(exc.errno or 0, f"tune_fs: can't statfs {device}")
        return

    reserved_blocks = size_sec // 100 * 5 * SECTOR_SIZE // bsize
    if reserved_blocks == 0:
        ploop_err(0, f"Can't set reserved blocks for size {size_sec}")
        return

    try:
        fcntl.ioctl(balloonfd, EXT4_IOC_SET_RSV_BLOCKS, struct.pack("=Q", reserved_blocks))
        return
    except OSError as exc:
        if exc.errno != errno.ENOTTY:
            ploop_err(exc.errno or 0, f"Can't set reserved blocks to {reserved_blocks}")
            return

    argv = [get_prog(TUNE2FS_PROGS), "-r", str(reserved_blocks), device]
    try:
        _run_prg(argv)
    except FsError:
        pass


def resize_fs(device: str, size_sec: int = 0) -> None:
    """Resize the file system to ``size_sec`` sectors, or to the device when zero."""
    argv = [get_prog(RESIZE2FS_PROGS), "-p", device]
    if size_sec:
        argv.append(f"{(size_sec >> 3 << 3) >> 1}k")
    try:
        rc = _run_prg(argv)
    except FsError:
        rc = -1
    if rc:
        raise FsError(f"resize2fs failed on {device}")


_DUMPE2FS_FIELDS = (
    ("block_count", re.compile(r"Block count:\s*(\d+)")),
    ("block_free", re.compile(r"Free blocks:\s*(\d+)")),
    ("block_size", re.compile(r"Block size:\s*(\d+)")),
)


def parse_dumpe2fs(lines: Iterable[str]) -> Dumpe2fsData:
    """Extract block count, free blocks and block size from dumpe2fs output."""
    values: dict = {}
    for line in lines:
        for name, pattern in _DUMPE2FS_FIELDS:
            if name in values:
                continue
            match = pattern.match(line)
            if match is not None:
                values[name] = int(match.group(1))
                break
    missing = [name for name, _ in _DUMPE2FS_FIELDS if name not in values]
    if missing:
        raise _fail(f"Not enough data: missing {', '.join(missing)}")
    return Dumpe2fsData(**values)


def dumpe2fs(device: str) -> Dumpe2fsData:
    """Run ``dumpe2fs -h`` on ``device`` and return its block figures."""
    argv = [get_prog(DUMPE2FS_PROGS), "-h", device]
    cmd = " ".join(argv)
    try:
        proc = subprocess.run(
            argv,
            env=_env(LANG="C"),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise _fail(f"Failed {cmd}", exc.errno or 0) from exc
    if proc.returncode:
        raise _fail(f"failed {cmd}")
    return parse_dumpe2fs(proc.stdout.splitlines())


def e2fsck(device: str, flags: int = E2fsckFlag.NONE) -> int:
    """Check ``device`` with fsck.ext4 and return its exit code (below 4)."""
    argv = ["fsck.ext4"]
    if flags & E2fsckFlag.PREEN:
        argv.append("-p")
    if flags & E2fsckFlag.FORCE:
        argv.append("-f")
    argv.append(device)

    rc = _run_prg(argv, quiet=True)
    if rc >= 4 or rc < 0:
        raise _fail(f"e2fsck failed (exit code {rc})")
    return rc