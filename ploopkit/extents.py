"""Reverse maps, free-block maps and relocation maps of ploop images."""

from __future__ import annotations

import enum
import os
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .fiemap import SECTOR_SHIFT, Extent
from .log import PloopError, ploop_err

PLOOP_MAP_OFFSET = 16
PLOOP_ZERO_INDEX = 0xFFFFFFFF
_U32_MASK = 0xFFFFFFFF


class ExtentError(PloopError):
    """An inconsistent map or a corrupted image was found."""


class PloopVersion(enum.Enum):
    """Layout of index entries: V1 stores sectors, V2 stores clusters."""

    V1 = enum.auto()
    V2 = enum.auto()


@dataclass
class FreeExtent:
    """A run of ``length`` clusters at image block ``iblk`` mapped to ``clu``."""

    clu: int
    iblk: int
    length: int


@dataclass
class RelocExtent:
    """A run to relocate; ``free`` is set where the target is already free."""

    clu: int
    iblk: int
    length: int
    free: int


@dataclass
class FreeBlocks:
    """Free extents handed to the kernel at a delta level."""

    level: int
    extents: List[FreeExtent] = field(default_factory=list)
    alloc_head: int = 0

    @property
    def n_extents(self) -> int:
        return len(self.extents)

    @property
    def total(self) -> int:
        return sum(ext.length for ext in self.extents)


@dataclass
class RelocBlocks:
    """Relocation request for the kernel."""

    level: int
    alloc_head: int
    n_scanned: int
    extents: List[RelocExtent] = field(default_factory=list)

    @property
    def n_extents(self) -> int:
        return len(self.extents)


@dataclass
class DeltaMap:
    """Index tables of an open image delta, read one cluster at a time."""

    fd: int
    blocksize: int
    l1_size: int
    l2_size: int
    version: PloopVersion = PloopVersion.V2
    l2_cache: int = -1
    l2: List[int] = field(default_factory=list)

    @property
    def cluster(self) -> int:
        return self.blocksize << SECTOR_SHIFT

    @property
    def entries_per_cluster(self) -> int:
        return self.cluster // 4

    @property
    def ioff_per_cluster(self) -> int:
        return self.blocksize if self.version is PloopVersion.V1 else 1

    def read_l2(self, l2_cluster: int) -> List[int]:
        """Return the index entries of cluster ``l2_cluster``, cached."""
        if self.l2_cache != l2_cluster:
            cluster = self.cluster
            try:
                data = os.pread(self.fd, cluster, l2_cluster * cluster)
            except OSError as exc:
                ploop_err(exc.errno or 0, "pread")
                raise ExtentError("Can't read index table") from exc
            if len(data) != cluster:
                ploop_err(0, "Short read of index table")
                raise ExtentError("Short read of index table")
            self.l2 = list(struct.unpack(f"<{cluster // 4}I", data))
            self.l2_cache = l2_cluster
        return self.l2


def _abort(message: str) -> ExtentError:
    ploop_err(0, message)
    return ExtentError(message)


def _extent_process(clu: int, length: int, rmap: List[int], delta: DeltaMap) -> None:
    per = delta.entries_per_cluster
    rlen = len(rmap)
    sectors = delta.cluster >> SECTOR_SHIFT
    while length > 0:
        l2_cluster, l2_slot = divmod(clu + PLOOP_MAP_OFFSET, per)
        last = min(l2_slot + length, per)
        if l2_cluster >= delta.l1_size:
            raise _abort("abort fiemap_extent_process: l2_cluster >= delta->l1_size")
        l2 = delta.read_l2(l2_cluster)
        for j in range(l2_slot, last):
            value = l2[j]
            if not value:
                continue
            ridx = value // delta.ioff_per_cluster
            vclu = clu + j - l2_slot
            if ridx >= rlen:
                raise _abort(
                    f"Image corrupted: L2[{vclu}] == {value} (max={(rlen - 1) * sectors})"
                )
            if ridx < delta.l1_size:
                raise _abort(
                    f"Image corrupted: L2[{vclu}] == {value} "
                    f"(min={delta.l1_size * sectors})"
                )
            rmap[ridx] = l2_cluster * per + j - PLOOP_MAP_OFFSET
        clu += last - l2_slot
        length -= last - l2_slot


def fiemap_build_rmap(extents: Sequence[Extent], rlen: int, delta: DeltaMap) -> List[int]:
    """Map image blocks backing ``extents`` to their virtual clusters."""
    cluster = delta.cluster
    if not cluster:
        raise ValueError("blocksize must be positive")
    rmap = [PLOOP_ZERO_INDEX] * rlen
    delta.l2_cache = -1
    for ext in extents:
        clu, clu_rem = divmod(ext.pos, cluster)
        length, len_rem = divmod(ext.length, cluster)
        if clu_rem or len_rem or clu >= _U32_MASK or length >= _U32_MASK:
            raise _abort("abort")
        _extent_process(clu, length, rmap, delta)
    return rmap


def rmap2freemap(rmap: Sequence[int], iblk_start: int, iblk_end: int) -> List[FreeExtent]:
    """Group a reverse map into runs contiguous in both image and virtual space."""
    freemap: List[FreeExtent] = []
    e_clu = e_iblk = e_len = 0
    state = False
    for iblk in range(iblk_start, iblk_end):
        clu = rmap[iblk]
        contiguous = iblk == e_iblk + e_len and clu == e_clu + e_len
        if state and (clu == PLOOP_ZERO_INDEX or not contiguous):
            freemap.append(FreeExtent(e_clu, e_iblk, e_len))
            e_clu = e_iblk = 0
            state = False
        if clu == PLOOP_ZERO_INDEX:
            continue
        if iblk == e_iblk + e_len and clu == e_clu + e_len:
            e_len += 1
        else:
            e_clu, e_iblk, e_len = clu, iblk, 1
            state = True
    if state:
        freemap.append(FreeExtent(e_clu, e_iblk, e_len))
    return freemap


def freemap2freeblks(freemap: Sequence[FreeExtent], level: int) -> FreeBlocks:
    """Build the kernel free-blocks request from a free map."""
    extents = []
    for ext in freemap:
        if not ext.length:
            raise _abort("abort: freemap2freeblks !freemap->extents[i].len")
        extents.append(FreeExtent(ext.clu, ext.iblk, ext.length))
    return FreeBlocks(level=level, extents=extents)


def freeblks2freemap(freeblks: FreeBlocks) -> List[FreeExtent]:
    """Turn a kernel free-blocks reply back into a free map."""
    freemap = []
    for ext in freeblks.extents:
        if not ext.length:
            raise _abort("abort: freeblks2freemap !freeblks->extents[i].len")
        freemap.append(FreeExtent(ext.clu, ext.iblk, ext.length))
    return freemap


def _range_build_rmap(
    iblk_start: int, iblk_end: int, rlen: int, delta: DeltaMap
) -> Tuple[List[int], int]:
    if not delta.cluster:
        raise ValueError("blocksize must be positive")
    if iblk_start >= iblk_end:
        raise _abort("range_build_rmap: iblk_start >= iblk_end")
    if delta.l2_size >= PLOOP_ZERO_INDEX:
        raise _abort("range_build_rmap: delta->l2_size >= PLOOP_ZERO_INDEX")

    rmap = [PLOOP_ZERO_INDEX] * rlen
    delta.l2_cache = -1
    per = delta.entries_per_cluster
    sectors = delta.cluster >> SECTOR_SHIFT
    n_requested = iblk_end - iblk_start
    n_found = 0
    for clu in range(delta.l2_size):
        l2_cluster, l2_slot = divmod(clu + PLOOP_MAP_OFFSET, per)
        if l2_cluster >= delta.l1_size:
            raise _abort("range_build_rmap: l2_cluster >= delta->l1_size")
        value = delta.read_l2(l2_cluster)[l2_slot]
        ridx = value // delta.ioff_per_cluster
        if ridx >= rlen:
            raise _abort(
                f"Image corrupted: L2[{clu}] == {value} (max={(rlen - 1) * sectors}) (2)"
            )
        if ridx and ridx < delta.l1_size:
            raise _abort(
                f"Image corrupted: L2[{clu}] == {value} "
                f"(min={delta.l1_size * sectors}) (2)"
            )
        if iblk_start <= ridx < iblk_end:
            rmap[ridx] = l2_cluster * per + l2_slot - PLOOP_MAP_OFFSET
            n_found += 1
            if n_found >= n_requested:
                break
    return rmap, n_found


def range_fix_gaps(
    freemap: Sequence[FreeExtent],
    iblk_start: int,
    iblk_end: int,
    n_to_fix: int,
    rmap: List[int],
) -> None:
    """Fill unmapped blocks of ``rmap`` that lie inside free extents, in place."""
    idx = 0
    count = len(freemap)
    for ridx in range(iblk_start, iblk_end):
        if rmap[ridx] != PLOOP_ZERO_INDEX:
            continue
        while idx < count and freemap[idx].iblk + freemap[idx].length <= ridx:
            idx += 1
        if idx == count:
            return
        fext = freemap[idx]
        if fext.iblk <= ridx:
            rmap[ridx] = fext.clu + (ridx - fext.iblk)
            n_to_fix = (n_to_fix - 1) & _U32_MASK
            if n_to_fix == 0:
                return


def range_split(
    rangemap: Sequence[FreeExtent], freemap: Sequence[FreeExtent]
) -> List[RelocExtent]:
    """Split range extents at the borders of free extents."""
    relocmap: List[RelocExtent] = []

    def add(clu: int, iblk: int, length: int, free: int) -> None:
        if length:
            relocmap.append(RelocExtent(clu, iblk, length, free))

    j = 0
    count = len(freemap)
    for rext in rangemap:
        ri, rc, rl = rext.iblk, rext.clu, rext.length
        while rl > 0:
            while j < count and freemap[j].iblk + freemap[j].length <= ri:
                j += 1
            if j >= count:
                add(rc, ri, rl, 0)
                break
            fi, fl = freemap[j].iblk, freemap[j].length
            if fi <= ri:
                step = min(ri + rl, fi + fl) - ri
                add(rc, ri, step, 1)
            else:
                step = min(ri + rl, fi) - ri
                add(rc, ri, step, 0)
            ri += step
            rc += step
            rl -= step

    if len(relocmap) < len(rangemap):
        raise _abort(
            "abort: range_split (*relocmap_pp)->n_entries_used < "
            "rangemap->n_entries_used"
        )
    return relocmap


def range_build(
    a_h: int,
    n_free_blocks: int,
    rlen: int,
    delta: DeltaMap,
    freemap: Sequence[FreeExtent],
) -> Tuple[List[FreeExtent], List[RelocExtent]]:
    """Build the range map of the image tail and its relocation map."""
    start = (a_h - n_free_blocks) & _U32_MASK
    rmap, found = _range_build_rmap(start, a_h, rlen, delta)
    if found != n_free_blocks:
        range_fix_gaps(freemap, start, a_h, n_free_blocks - found, rmap)
    rangemap = rmap2freemap(rmap, start, a_h)
    relocmap = range_split(rangemap, freemap)
    return rangemap, relocmap


def relocmap2relocblks(
    relocmap: Optional[Sequence[RelocExtent]], level: int, a_h: int, n_scanned: int
) -> RelocBlocks:
    """Build the kernel relocation request from a relocation map."""
    extents = []
    for ext in relocmap or ():
        if not ext.length:
            raise _abort("abort: relocmap2relocblks !relocmap->extents[i].len")
        extents.append(RelocExtent(ext.clu, ext.iblk, ext.length, ext.free))
    return RelocBlocks(level=level, alloc_head=a_h, n_scanned=n_scanned, extents=extents)