import os
import struct

import pytest

from ploopkit.extents import (
    PLOOP_MAP_OFFSET,
    PLOOP_ZERO_INDEX,
    DeltaMap,
    ExtentError,
    FreeBlocks,
    FreeExtent,
    PloopVersion,
    RelocExtent,
    fiemap_build_rmap,
    freeblks2freemap,
    freemap2freeblks,
    range_build,
    range_fix_gaps,
    range_split,
    relocmap2relocblks,
    rmap2freemap,
)
from ploopkit.fiemap import Extent

Z = PLOOP_ZERO_INDEX
BLOCKSIZE = 1
CLUSTER = BLOCKSIZE * 512
PER = CLUSTER // 4


@pytest.fixture
def make_delta(tmp_path):
    opened = []

    def build(mapping, version=PloopVersion.V2, l1_size=1, extra_clusters=8):
        entries = [0] * (PER * l1_size)
        for clu, iblk in mapping.items():
            ioff = iblk * BLOCKSIZE if version is PloopVersion.V1 else iblk
            entries[PLOOP_MAP_OFFSET + clu] = ioff
        data = struct.pack(f"<{len(entries)}I", *entries)
        data += b"\0" * (CLUSTER * extra_clusters)
        path = tmp_path / "image.hdd"
        path.write_bytes(data)
        fd = os.open(path, os.O_RDONLY)
        opened.append(fd)
        return DeltaMap(
            fd=fd,
            blocksize=BLOCKSIZE,
            l1_size=l1_size,
            l2_size=PER * l1_size - PLOOP_MAP_OFFSET,
            version=version,
        )

    yield build
    for fd in opened:
        os.close(fd)


def test_read_l2_returns_entries(make_delta):
    delta = make_delta({0: 3, 2: 5})
    l2 = delta.read_l2(0)
    assert len(l2) == PER
    assert l2[PLOOP_MAP_OFFSET] == 3
    assert l2[PLOOP_MAP_OFFSET + 2] == 5
    assert delta.l2_cache == 0


def test_read_l2_beyond_file_raises(make_delta):
    delta = make_delta({}, extra_clusters=0)
    with pytest.raises(ExtentError):
        delta.read_l2(5)


def test_fiemap_build_rmap(make_delta):
    delta = make_delta({0: 3, 1: 4, 5: 1})
    rmap = fiemap_build_rmap([Extent(0, 3 * CLUSTER)], 8, delta)
    expected = [Z] * 8
    expected[3] = 0
    expected[4] = 1
    assert rmap == expected


def test_fiemap_build_rmap_v1_uses_sectors(make_delta):
    delta = make_delta({0: 3, 1: 4}, version=PloopVersion.V1)
    rmap = fiemap_build_rmap([Extent(0, 2 * CLUSTER)], 8, delta)
    assert rmap[3] == 0 and rmap[4] == 1


def test_fiemap_build_rmap_ignores_empty_extents(make_delta):
    delta = make_delta({0: 3})
    assert fiemap_build_rmap([Extent(0, 0)], 4, delta) == [Z] * 4


def test_fiemap_build_rmap_rejects_unaligned(make_delta):
    delta = make_delta({0: 3})
    with pytest.raises(ExtentError):
        fiemap_build_rmap([Extent(100, CLUSTER)], 8, delta)


def test_fiemap_build_rmap_detects_index_beyond_rlen(make_delta):
    delta = make_delta({0: 20})
    with pytest.raises(ExtentError):
        fiemap_build_rmap([Extent(0, CLUSTER)], 8, delta)


def test_rmap2freemap_groups_runs():
    rmap = [Z, Z, 5, 6, 7, Z, 10]
    assert rmap2freemap(rmap, 0, len(rmap)) == [
        FreeExtent(clu=5, iblk=2, length=3),
        FreeExtent(clu=10, iblk=6, length=1),
    ]


def test_rmap2freemap_breaks_on_virtual_gap():
    rmap = [Z, 5, 9]
    assert rmap2freemap(rmap, 0, 3) == [FreeExtent(5, 1, 1), FreeExtent(9, 2, 1)]


def test_rmap2freemap_respects_bounds():
    rmap = [Z, 5, 6, 7]
    assert rmap2freemap(rmap, 2, 4) == [FreeExtent(6, 2, 2)]
    assert rmap2freemap([Z, Z], 0, 2) == []


def test_freemap_freeblks_round_trip():
    freemap = [FreeExtent(5, 2, 3), FreeExtent(10, 6, 1)]
    freeblks = freemap2freeblks(freemap, 4)
    assert freeblks.level == 4
    assert freeblks.n_extents == len(freemap)
    assert freeblks.total == 3 + 1
    assert freeblks2freemap(freeblks) == freemap


def test_freemap2freeblks_rejects_zero_length():
    with pytest.raises(ExtentError):
        freemap2freeblks([FreeExtent(5, 2, 0)], 0)


def test_freeblks2freemap_rejects_zero_length():
    with pytest.raises(ExtentError):
        freeblks2freemap(FreeBlocks(level=0, extents=[FreeExtent(1, 2, 0)]))


def test_range_fix_gaps_fills_from_freemap():
    rmap = [Z] * 6
    range_fix_gaps([FreeExtent(clu=20, iblk=2, length=3)], 0, 6, 2, rmap)
    assert rmap[2] == 20
    assert rmap[3] == 21
    assert rmap[4] == Z
    assert rmap[:2] == [Z, Z]


def test_range_fix_gaps_keeps_mapped_entries():
    rmap = [Z, Z, 7, Z]
    range_fix_gaps([FreeExtent(clu=20, iblk=2, length=2)], 0, 4, 5, rmap)
    assert rmap == [Z, Z, 7, 21]


def test_range_split_marks_free_parts():
    rangemap = [FreeExtent(clu=100, iblk=0, length=10)]
    freemap = [FreeExtent(clu=0, iblk=3, length=2)]
    relocmap = range_split(rangemap, freemap)
    assert [r.free for r in relocmap] == [0, 1, 0]
    assert sum(r.length for r in relocmap) == 10
    assert relocmap[1].iblk == 3 and relocmap[1].length == 2
    for prev, nxt in zip(relocmap, relocmap[1:]):
        assert prev.iblk + prev.length == nxt.iblk
        assert prev.clu + prev.length == nxt.clu


def test_range_split_without_free_extents():
    rangemap = [FreeExtent(clu=100, iblk=0, length=10)]
    assert range_split(rangemap, []) == [RelocExtent(100, 0, 10, 0)]


def test_range_split_aborts_on_empty_range_extent():
    with pytest.raises(ExtentError):
        range_split([FreeExtent(clu=1, iblk=0, length=0)], [])


def test_range_build(make_delta):
    delta = make_delta({0: 3, 1: 4})
    freemap = [FreeExtent(clu=50, iblk=3, length=1)]
    rangemap, relocmap = range_build(5, 2, 8, delta, freemap)
    assert rangemap == [FreeExtent(clu=0, iblk=3, length=2)]
    assert relocmap == [RelocExtent(0, 3, 1, 1), RelocExtent(1, 4, 1, 0)]


def test_range_build_fills_gaps_from_freemap(make_delta):
    delta = make_delta({0: 3})
    freemap = [FreeExtent(clu=50, iblk=4, length=1)]
    rangemap, relocmap = range_build(5, 2, 8, delta, freemap)
    assert rangemap == [FreeExtent(0, 3, 1), FreeExtent(50, 4, 1)]
    assert [r.free for r in relocmap] == [0, 1]


def test_range_build_rejects_alloc_head_below_free_count(make_delta):
    delta = make_delta({0: 3})
    with pytest.raises(ExtentError):
        range_build(1, 2, 8, delta, [])


def test_relocmap2relocblks():
    relocmap = [RelocExtent(0, 3, 1, 1), RelocExtent(1, 4, 1, 0)]
    blocks = relocmap2relocblks(relocmap, 2, 5, 2)
    assert blocks.level == 2
    assert blocks.alloc_head == 5
    assert blocks.n_scanned == 2
    assert blocks.extents == relocmap
    assert blocks.n_extents == 2


def test_relocmap2relocblks_accepts_none():
    blocks = relocmap2relocblks(None, 1, 7, 0)
    assert blocks.extents == [] and blocks.alloc_head == 7


def test_relocmap2relocblks_rejects_zero_length():
    with pytest.raises(ExtentError):
        relocmap2relocblks([RelocExtent(0, 3, 0, 0)], 0, 5, 0)