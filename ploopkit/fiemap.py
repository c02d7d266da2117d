"""Collection of unwritten file extents through FIEMAP and cluster alignment."""

from __future__ import annotations

import fcntl
import struct
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence, Tuple, Union

from .log import PloopError, ploop_err

SECTOR_SHIFT = 9

FS_IOC_FIEMAP = 0xC020660B
FIEMAP_FLAG_SYNC = 0x00000001

FIEMAP_EXTENT_LAST = 0x00000001
FIEMAP_EXTENT_UNKNOWN = 0x00000002
FIEMAP_EXTENT_DELALLOC = 0x00000004
FIEMAP_EXTENT_ENCODED = 0x00000008
FIEMAP_EXTENT_DATA_ENCRYPTED = 0x00000080
FIEMAP_EXTENT_NOT_ALIGNED = 0x00000100
FIEMAP_EXTENT_DATA_INLINE = 0x00000200
FIEMAP_EXTENT_DATA_TAIL = 0x00000400
FIEMAP_EXTENT_UNWRITTEN = 0x00000800
FIEMAP_EXTENT_MERGED = 0x00001000

_FIEMAP_HEADER = struct.Struct("=QQIIII")
_FIEMAP_EXTENT = struct.Struct("=QQQQQIIII")
_FIEMAP_BUF_SIZE = 40960
_FIEMAP_COUNT = (_FIEMAP_BUF_SIZE - _FIEMAP_HEADER.size) // _FIEMAP_EXTENT.size

_FLAG_NAMES = (
    (FIEMAP_EXTENT_UNKNOWN, "unknown,"),
    (FIEMAP_EXTENT_DELALLOC, "delalloc,"),
    (FIEMAP_EXTENT_DATA_ENCRYPTED, "encrypted,"),
    (FIEMAP_EXTENT_NOT_ALIGNED, "not_aligned,"),
    (FIEMAP_EXTENT_DATA_INLINE, "inline,"),
    (FIEMAP_EXTENT_DATA_TAIL, "tail_packed,"),
    (FIEMAP_EXTENT_UNWRITTEN, "unwritten,"),
    (FIEMAP_EXTENT_MERGED, "merged,"),
    (FIEMAP_EXTENT_LAST, "last"),
)


@dataclass
class Extent:
    """A byte range on the underlying device."""

    pos: int
    length: int


@dataclass
class _RawExtent:
    logical: int
    physical: int
    length: int
    flags: int


RawExtentLike = Union[_RawExtent, Tuple[int, int, int, int]]
Query = Callable[[int], Sequence[RawExtentLike]]


def add_extent(extents: List[Extent], pos: int, length: int) -> None:
    """Add a range, merging it into an existing extent it touches."""
    for ext in extents:
        if ext.pos + ext.length == pos:
            ext.length += length
            return
        if pos + length == ext.pos:
            ext.pos = pos
            ext.length += length
            return
    extents.append(Extent(pos, length))


def extent_flags_str(flags: int) -> str:
    """Describe FIEMAP extent flags as a comma separated list."""
    return "".join(name for bit, name in _FLAG_NAMES if flags & bit)


def _as_raw(item: RawExtentLike) -> _RawExtent:
    if isinstance(item, _RawExtent):
        return item
    logical, physical, length, flags = item
    return _RawExtent(logical, physical, length, flags)


def _collect_extents(query: Query, off: int, start: int, size: int) -> List[Extent]:
    """Walk extents returned by ``query(fm_start)`` and gather unwritten ones."""
    result: List[Extent] = []
    fm_start = start
    seen = 0
    last = False
    while True:
        raw = [_as_raw(item) for item in query(fm_start)]
        if not raw:
            break
        for i, ext in enumerate(raw):
            seen += 1
            if ext.flags & FIEMAP_EXTENT_LAST:
                last = True
            unexpected = ext.flags & ~FIEMAP_EXTENT_UNWRITTEN & ~FIEMAP_EXTENT_LAST
            if not ext.flags & FIEMAP_EXTENT_UNWRITTEN or unexpected:
                ploop_err(
                    0,
                    f"Skipping extent ({ext.length}/{ext.logical}/{ext.physical}) "
                    f"with unexpected flags={extent_flags_str(ext.flags)}",
                )
                continue
            if seen == 1 and ext.logical < start:
                shift = start - ext.logical
                ext.physical += shift
                ext.length -= shift
                ext.logical = start
            if i < len(raw) - 1 and raw[i + 1].physical == ext.physical + ext.length:
                nxt = raw[i + 1]
                nxt.physical -= ext.length
                nxt.logical -= ext.length
                nxt.length += ext.length
                continue
            if ext.logical >= size:
                return result
            if ext.logical + ext.length > size:
                add_extent(result, ext.physical + off, size - ext.logical)
                return result
            add_extent(result, ext.physical + off, ext.length)
        tail = raw[-1]
        fm_start = tail.logical + tail.length
        if last or fm_start >= size:
            break
    return result


def _ioctl_query(fd: int) -> Query:
    def query(fm_start: int) -> List[_RawExtent]:
        buf = bytearray(_FIEMAP_BUF_SIZE)
        _FIEMAP_HEADER.pack_into(
            buf, 0, fm_start, 0xFFFFFFFFFFFFFFFF, FIEMAP_FLAG_SYNC, 0, _FIEMAP_COUNT, 0
        )
        try:
            fcntl.ioctl(fd, FS_IOC_FIEMAP, buf, True)
        except OSError as exc:
            ploop_err(exc.errno or 0, "Error in ioctl(FS_IOC_FIEMAP)")
            raise PloopError("Error in ioctl(FS_IOC_FIEMAP)") from exc
        mapped = _FIEMAP_HEADER.unpack_from(buf, 0)[3]
        extents = []
        for idx in range(mapped):
            fields = _FIEMAP_EXTENT.unpack_from(
                buf, _FIEMAP_HEADER.size + idx * _FIEMAP_EXTENT.size
            )
            logical, physical, length, _r1, _r2, flags = fields[:6]
            extents.append(_RawExtent(logical, physical, length, flags))
        return extents

    return query


def fiemap_get(fd: int, off: int, start: int, size: int) -> List[Extent]:
    """Return unwritten extents of ``fd`` between ``start`` and ``size``.

    Physical positions are shifted by ``off`` bytes.
    """
    return _collect_extents(_ioctl_query(fd), off, start, size)


def fiemap_adjust(extents: Iterable[Extent], blocksize: int) -> None:
    """Shrink every extent in place to whole clusters of ``blocksize`` sectors."""
    cluster = blocksize << SECTOR_SHIFT
    if not cluster:
        raise ValueError("blocksize must be positive")
    mask = cluster - 1
    for ext in extents:
        pos = (ext.pos + mask) & ~mask
        if pos >= ext.pos + ext.length:
            ext.pos = ext.length = 0
            continue
        ext.length -= pos - ext.pos
        ext.pos = pos
        ext.length &= ~mask
        if ext.length == 0:
            ext.pos = 0