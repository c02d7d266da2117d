# ploopkit

A Python library for working with ploop disk images and the block devices
that serve them on Linux.

## What it covers

- `ploopkit.log`: leveled logging to the console and to a log file, and a
  per-thread record of the last error (`ploop_log`, `ploop_err`,
  `get_last_error`, `set_log_level`, `get_log_level`, `set_verbose_level`,
  `set_log_file`).
- `ploopkit.cleanup`: per-thread cleanup hooks that run, newest first, when
  an operation is cancelled (`register_cleanup_hook`,
  `unregister_cleanup_hook`, `cancel_operation`, `get_cancel_handle`).
- `ploopkit.crc32`: the CRC-32 that GPT headers use (`crc32`).
- `ploopkit.lock`: exclusive file locks with an optional timeout
  (`lock_file`, `unlock`, `global_lock`, `disk_descriptor_lock_fname`).
- `ploopkit.fiemap`: collection of unwritten file extents through the
  FIEMAP ioctl and their alignment to whole clusters (`fiemap_get`,
  `fiemap_adjust`, `add_extent`, `extent_flags_str`, `Extent`).
- `ploopkit.extents`: reverse maps, free-block and relocation maps of an
  image (`DeltaMap`, `fiemap_build_rmap`, `rmap2freemap`,
  `freemap2freeblks`, `freeblks2freemap`, `range_fix_gaps`, `range_split`,
  `range_build`, `relocmap2relocblks`).
- `ploopkit.sysfs`: queries on running ploop devices under `/sys/block`
  (`SysfsTree`, `get_size`, `make_sysfs_dev_name`). The tree's root can be
  pointed elsewhere, which makes it usable against a copied hierarchy.
- `ploopkit.gpt`: reading, checking and resizing GPT partition tables
  (`GptHeader`, `GptEntry`, `has_partition`, `get_partition_device_name`,
  `resize_gpt_partition`, `detect_image_sector_size`,
  `check_and_repair_gpt`).
- `ploopkit.fsutils`: wrappers around `parted`, `mkfs`, `tune2fs`,
  `resize2fs`, `dumpe2fs` and `fsck.ext4` (`create_gpt_partition`,
  `make_fs`, `tune_fs`, `resize_fs`, `dumpe2fs`, `parse_dumpe2fs`,
  `e2fsck`).

## Install

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Example

```python
from ploopkit.crc32 import crc32
from ploopkit.extents import PLOOP_ZERO_INDEX, rmap2freemap

print(hex(crc32(b"123456789")))  # 0xcbf43926

rmap = [5, 6, PLOOP_ZERO_INDEX, 9]
print(rmap2freemap(rmap, 0, len(rmap)))
# [FreeExtent(clu=5, iblk=0, length=2), FreeExtent(clu=9, iblk=3, length=1)]
```

Failures are reported by raising exceptions: `PloopError` and its
subclasses `LockError`, `ExtentError`, `SysfsError`, `GptError` and
`FsError`.

Operations on devices and sysfs need a Linux host with ploop support and,
for most of them, root privileges.

## What it does not do

- It has no model of a disk descriptor: images, snapshots and their
  parent/child tree are not read, kept or edited here. Only the name of a
  descriptor's lock file is provided (`disk_descriptor_lock_fname`).
- It does not mount, unmount, snapshot, merge or check images, and it does
  not drive the balloon or discard operations end to end; it supplies the
  map building blocks those operations are made from.
- It installs no command-line programs.