"""GPT partition table inspection, resizing and sector size repair."""

from __future__ import annotations

import array
import contextlib
import fcntl
import os
import stat
import struct
from dataclasses import dataclass, replace

from .crc32 import crc32
from .log import PloopError, ploop_err, ploop_log
from .sysfs import get_size

SECTOR_SIZE = 512
DEF_CLUSTER = 2048
GPT_PT_ENTRY_SIZE = 16384
MAX_SECTOR_SIZE = 4096

GPT_SIGNATURE = 0x5452415020494645
XXX_SIGNATURE = 0x5452415020585858

BLKSSZGET = 0x1268
BLKPG = 0x1269
BLKPG_RESIZE_PARTITION = 3

_U64 = (1 << 64) - 1
_U32 = 0xFFFFFFFF
_HEADER = struct.Struct("<QIIIIQQQQ16sQIII")
HEADER_SIZE = 104
_TAIL_SIZE = HEADER_SIZE - _HEADER.size
_ENTRY = struct.Struct("<16s16sQQ")
_SIG = struct.Struct("<Q")
_MBR_PART1 = 0x1BE


class GptError(PloopError):
    """A GPT could not be read, validated or written."""


def _fail(message: str, err_no: int = 0) -> GptError:
    ploop_err(err_no, message)
    return GptError(message)


@dataclass
class GptHeader:
    """The GPT header, with the bytes that follow its fixed fields."""

    signature: int = GPT_SIGNATURE
    revision: int = 0
    header_size: int = _HEADER.size
    header_crc32: int = 0
    reserved1: int = 0
    my_lba: int = 0
    alternate_lba: int = 0
    first_usable_lba: int = 0
    last_usable_lba: int = 0
    disk_guid: bytes = bytes(16)
    partition_entry_lba: int = 0
    num_partition_entries: int = 0
    size_partition_entry: int = 0
    partition_entry_array_crc32: int = 0
    tail: bytes = bytes(_TAIL_SIZE)

    @classmethod
    def from_bytes(cls, data: bytes) -> "GptHeader":
        """Parse a header from at least its fixed fields."""
        if len(data) < _HEADER.size:
            raise GptError("GPT header is too short")
        fields = _HEADER.unpack_from(data, 0)
        tail = bytes(data[_HEADER.size:HEADER_SIZE]).ljust(_TAIL_SIZE, b"\0")
        return cls(*fields, tail=tail)

    def to_bytes(self) -> bytes:
        """Serialize the header, tail included."""
        return _HEADER.pack(
            self.signature & _U64,
            self.revision & _U32,
            self.header_size & _U32,
            self.header_crc32 & _U32,
            self.reserved1 & _U32,
            self.my_lba & _U64,
            self.alternate_lba & _U64,
            self.first_usable_lba & _U64,
            self.last_usable_lba & _U64,
            self.disk_guid,
            self.partition_entry_lba & _U64,
            self.num_partition_entries & _U32,
            self.size_partition_entry & _U32,
            self.partition_entry_array_crc32 & _U32,
        ) + self.tail

    def compute_crc(self) -> int:
        """CRC-32 of the first ``header_size`` bytes with the CRC field zeroed."""
        return crc32(replace(self, header_crc32=0).to_bytes()[: self.header_size])


@dataclass
class GptEntry:
    """The leading fields of a partition entry."""

    type_guid: bytes = bytes(16)
    unique_guid: bytes = bytes(16)
    starting_lba: int = 0
    ending_lba: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "GptEntry":
        """Parse an entry from the start of ``data``."""
        if len(data) < _ENTRY.size:
            raise GptError("GPT entry is too short")
        return cls(*_ENTRY.unpack_from(data, 0))

    def to_bytes(self) -> bytes:
        """Serialize the entry's leading fields."""
        return _ENTRY.pack(
            self.type_guid, self.unique_guid, self.starting_lba & _U64, self.ending_lba & _U64
        )


def _roundup(value: int, align: int) -> int:
    return (value + align - 1) // align * align


def _sector_size(fd: int) -> int:
    if stat.S_ISREG(os.fstat(fd).st_mode):
        return SECTOR_SIZE
    buf = bytearray(4)
    try:
        fcntl.ioctl(fd, BLKSSZGET, buf, True)
    except OSError as exc:
        raise _fail("Error in ioctl(BLKSSZGET)", exc.errno or 0) from exc
    return struct.unpack("=i", buf)[0]


def _read_exact(fd: int, size: int, pos: int, msg: str) -> bytes:
    try:
        data = os.pread(fd, size, pos)
    except OSError as exc:
        raise _fail(msg, exc.errno or 0) from exc
    if len(data) != size:
        ploop_log(0, f"Short {msg}")
        raise GptError(f"Short {msg}")
    return data


def _write_exact(fd: int, data: bytes, pos: int, msg: str) -> None:
    try:
        written = os.pwrite(fd, data, pos)
    except OSError as exc:
        raise _fail(msg, exc.errno or 0) from exc
    if written != len(data):
        ploop_log(0, f"Short {msg}")
        raise GptError(f"Short {msg}")


def _open(device: str, flags: int, msg: str) -> int:
    try:
        return os.open(device, flags)
    except OSError as exc:
        raise _fail(f"{msg} {device}", exc.errno or 0) from exc


def has_partition(device: str) -> bool:
    """Tell whether ``device`` carries a GPT signature at LBA 1."""
    fd = _open(device, os.O_RDONLY, "Can't open")
    try:
        sector_size = _sector_size(fd)
        data = _read_exact(fd, _SIG.size, sector_size, "Failed to read the GPT signaturer")
        return _SIG.unpack(data)[0] == GPT_SIGNATURE
    finally:
        os.close(fd)


def get_partition_device_name(device: str) -> str:
    """Return the first partition's device node, creating it if needed."""
    if not has_partition(device):
        return device
    name = device[5:] if device.startswith("/dev/") else device
    out = f"/dev/{name}p1"
    if os.path.exists(out):
        return out
    try:
        rdev = os.stat(device).st_rdev
    except OSError as exc:
        raise _fail(f"failed stat {device}", exc.errno or 0) from exc
    try:
        os.mknod(out, stat.S_IFBLK, rdev + 1)
    except OSError as exc:
        raise _fail(f"failed mknod {out}", exc.errno or 0) from exc
    try:
        os.chmod(out, 0o600)
    except OSError as exc:
        raise _fail(f"failed chmod {out}", exc.errno or 0) from exc
    return out


def _blkpg_resize_partition(fd: int, entry: GptEntry, sector_size: int) -> None:
    start = entry.starting_lba * sector_size
    length = (entry.ending_lba - entry.starting_lba + 1) * sector_size
    ploop_log(3, f"update partition table start={start} length={length}")
    part = array.array("B", struct.pack("=qqi64s64s4x", start, length, 1, b"", b""))
    address = part.buffer_info()[0]
    arg = struct.pack("=iii4xQ", BLKPG_RESIZE_PARTITION, 0, len(part), address)
    try:
        fcntl.ioctl(fd, BLKPG, arg)
    except OSError as exc:
        ploop_err(exc.errno or 0, "Error in ioctl(BLKPG)")


def update_protective_mbr(fd: int, new_size: int) -> None:
    """Stretch the protective MBR partition up to ``new_size`` sectors."""
    try:
        buf = bytearray(os.pread(fd, SECTOR_SIZE, 0))
    except OSError as exc:
        ploop_err(exc.errno or 0, "Failed to read MBR")
        return
    if len(buf) != SECTOR_SIZE:
        ploop_err(0, "Failed to read MBR")
        return
    buf[_MBR_PART1 + 5] = 0xFE
    buf[_MBR_PART1 + 6] = 0xFF
    buf[_MBR_PART1 + 7] = 0xFF
    start_lba = struct.unpack_from("<I", buf, _MBR_PART1 + 8)[0]
    count = min((new_size - start_lba) & _U64, _U32)
    struct.pack_into("<I", buf, _MBR_PART1 + 12, count)
    with contextlib.suppress(GptError):
        _write_exact(fd, bytes(buf), 0, "Failed to update protective MBR")


def _update_gpt_partition(
    fd: int,
    devname: str,
    new_size512: int,
    sector_size: int,
    image_sector_size: int,
    blocksize512: int,
) -> None:
    convert = sector_size != image_sector_size
    size = get_size(devname)
    if new_size512 == 0:
        new_size512 = size
    if new_size512 > size:
        raise _fail(
            "Unable to resize GPT partition: incorrect parameter "
            f"new_size={new_size512} size={size}"
        )

    new_size = new_size512 * SECTOR_SIZE // sector_size
    blocksize = (blocksize512 or DEF_CLUSTER) * SECTOR_SIZE // sector_size
    gpt_size_bytes = sector_size + _roundup(GPT_PT_ENTRY_SIZE, sector_size)
    ploop_log(1, f"Update GPT partition to {new_size}sec ({sector_size})")

    hdr = GptHeader.from_bytes(
        _read_exact(fd, HEADER_SIZE, image_sector_size, "Failed to read the GPT header")
    )
    buf = bytearray(
        _read_exact(
            fd, GPT_PT_ENTRY_SIZE, image_sector_size * 2,
            "Failed to read the GPT partition entries",
        )
    )
    entry = GptEntry.from_bytes(buf)

    crc = hdr.compute_crc()
    if crc != hdr.header_crc32:
        raise _fail(f"GPT validation failed orig crc {hdr.header_crc32:x} != {crc:x}")

    hdr.alternate_lba = new_size - 1
    hdr.last_usable_lba = new_size - gpt_size_bytes // sector_size - 1
    entry.ending_lba = hdr.last_usable_lba // blocksize * blocksize - 1

    if convert:
        hdr.my_lba = 1
        hdr.partition_entry_lba = 2
        hdr.first_usable_lba = (sector_size + gpt_size_bytes) // sector_size
        entry.starting_lba = entry.starting_lba * image_sector_size // sector_size
        _write_exact(
            fd, _SIG.pack(XXX_SIGNATURE), image_sector_size,
            "Failed to clear the GPT signature",
        )

    buf[: _ENTRY.size] = entry.to_bytes()
    hdr.partition_entry_array_crc32 = crc32(bytes(buf))
    hdr.header_crc32 = hdr.compute_crc()

    _write_exact(fd, hdr.to_bytes(), sector_size, "Failed to write the GPT header")
    _write_exact(fd, bytes(buf), sector_size * 2, "Failed to write the GPT partition entries")
    try:
        os.fsync(fd)
    except OSError as exc:
        raise _fail(f"Can't fsync {devname}", exc.errno or 0) from exc

    hdr.my_lba, hdr.alternate_lba = hdr.alternate_lba, hdr.my_lba
    hdr.partition_entry_lba = hdr.last_usable_lba + 1
    hdr.header_crc32 = hdr.compute_crc()

    _write_exact(
        fd, bytes(buf), (hdr.last_usable_lba + 1) * sector_size,
        "Failed to write secondary GPT partition entries",
    )
    _write_exact(
        fd, hdr.to_bytes(), (new_size - 1) * sector_size,
        "Failed to write secondary GPT header",
    )

    update_protective_mbr(fd, new_size)
    with contextlib.suppress(OSError):
        os.fsync(fd)
    _blkpg_resize_partition(fd, entry, sector_size)


def resize_gpt_partition(device: str, new_size512: int = 0, blocksize512: int = 0) -> None:
    """Grow the GPT and its first partition; zero size means the whole device."""
    if not has_partition(device):
        return
    fd = _open(device, os.O_RDWR, "Failed to open")
    try:
        sector_size = _sector_size(fd)
        _update_gpt_partition(fd, device, new_size512, sector_size, sector_size, blocksize512)
    finally:
        os.close(fd)


def detect_image_sector_size(data: bytes) -> int:
    """Find the sector size a GPT was written with; zero when none is found."""
    found = 0
    size = SECTOR_SIZE
    while size <= MAX_SECTOR_SIZE:
        if len(data) >= size + _SIG.size and _SIG.unpack_from(data, size)[0] == GPT_SIGNATURE:
            if found:
                raise _fail(
                    "Unable to detect the device sector size: multiple GPT signature found"
                )
            found = size
        size *= 2
    return found


def check_and_repair_gpt(device: str, blocksize512: int = 0) -> None:
    """Rewrite a GPT made for another sector size to the device's sector size."""
    fd = _open(device, os.O_RDWR, "Failed to open")
    try:
        sector_size = _sector_size(fd)
        data = _read_exact(fd, _SIG.size, sector_size, "Failed to read the GPT signaturer")
        if _SIG.unpack(data)[0] == GPT_SIGNATURE:
            return
        try:
            head = _read_exact(fd, MAX_SECTOR_SIZE * 2, 0, "Failed to read")
        except GptError:
            ploop_err(0, "Unable to detect device sector size")
            raise
        image_sector_size = detect_image_sector_size(head)
        if image_sector_size in (0, sector_size):
            return
        ploop_log(
            0, f"GPT sector size incompatibility detected {image_sector_size}/{sector_size}"
        )
        _update_gpt_partition(fd, device, 0, sector_size, image_sector_size, blocksize512)
    finally:
        os.close(fd)