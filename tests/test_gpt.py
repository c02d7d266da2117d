import struct

import pytest

from ploopkit.crc32 import crc32
from ploopkit.gpt import (
    GPT_PT_ENTRY_SIZE,
    GPT_SIGNATURE,
    HEADER_SIZE,
    GptEntry,
    GptError,
    GptHeader,
    check_and_repair_gpt,
    detect_image_sector_size,
    get_partition_device_name,
    has_partition,
    resize_gpt_partition,
    update_protective_mbr,
)

MIB = 1 << 20


def _make_image(path, sector, total, start_lba=2048, corrupt=False):
    with open(path, "wb") as fh:
        fh.truncate(total)
    entry = GptEntry(b"\x01" * 16, b"\x02" * 16, start_lba, start_lba + 100)
    entries = entry.to_bytes() + bytes(GPT_PT_ENTRY_SIZE - len(entry.to_bytes()))
    hdr = GptHeader(
        signature=GPT_SIGNATURE,
        revision=0x10000,
        header_size=92,
        my_lba=1,
        alternate_lba=total // sector - 1,
        first_usable_lba=34,
        last_usable_lba=total // sector - 34,
        disk_guid=b"\x03" * 16,
        partition_entry_lba=2,
        num_partition_entries=128,
        size_partition_entry=128,
        partition_entry_array_crc32=crc32(entries),
    )
    hdr.header_crc32 = hdr.compute_crc() ^ (1 if corrupt else 0)
    mbr = bytearray(512)
    struct.pack_into("<II", mbr, 0x1BE + 8, 1, 100)
    with open(path, "r+b") as fh:
        fh.write(mbr)
        fh.seek(sector)
        fh.write(hdr.to_bytes())
        fh.seek(sector * 2)
        fh.write(entries)
    return entry


def _read_header(path, pos):
    with open(path, "rb") as fh:
        fh.seek(pos)
        return GptHeader.from_bytes(fh.read(HEADER_SIZE))


def _read(path, pos, size):
    with open(path, "rb") as fh:
        fh.seek(pos)
        return fh.read(size)


def test_signature_bytes():
    data = bytearray(8192)
    data[512:520] = b"EFI PART"
    assert detect_image_sector_size(bytes(data)) == 512


def test_header_roundtrip():
    hdr = GptHeader(revision=0x10000, my_lba=1, alternate_lba=99, disk_guid=b"\x07" * 16)
    data = hdr.to_bytes()
    assert len(data) == HEADER_SIZE
    assert GptHeader.from_bytes(data) == hdr


def test_entry_roundtrip():
    entry = GptEntry(b"\x01" * 16, b"\x02" * 16, 34, 2047)
    assert GptEntry.from_bytes(entry.to_bytes()) == entry


def test_short_header_rejected():
    with pytest.raises(GptError):
        GptHeader.from_bytes(b"\0" * 10)


def test_compute_crc_ignores_stored_crc():
    hdr = GptHeader(header_size=92, my_lba=1)
    other = GptHeader(header_size=92, my_lba=1, header_crc32=0x1234)
    assert hdr.compute_crc() == other.compute_crc()
    assert hdr.compute_crc() == crc32(hdr.to_bytes()[:92])


def test_has_partition(tmp_path):
    img = tmp_path / "gpt.img"
    _make_image(img, 512, 4 * MIB)
    plain = tmp_path / "plain.img"
    plain.write_bytes(bytes(4096))
    assert has_partition(str(img)) is True
    assert has_partition(str(plain)) is False


def test_has_partition_missing(tmp_path):
    with pytest.raises(GptError):
        has_partition(str(tmp_path / "absent"))


def test_partition_device_name_without_gpt(tmp_path):
    plain = tmp_path / "plain.img"
    plain.write_bytes(bytes(4096))
    assert get_partition_device_name(str(plain)) == str(plain)


def test_detect_image_sector_size():
    data = bytearray(8192)
    assert detect_image_sector_size(bytes(data)) == 0
    struct.pack_into("<Q", data, 4096, GPT_SIGNATURE)
    assert detect_image_sector_size(bytes(data)) == 4096
    struct.pack_into("<Q", data, 512, GPT_SIGNATURE)
    with pytest.raises(GptError):
        detect_image_sector_size(bytes(data))


def test_update_protective_mbr(tmp_path):
    img = tmp_path / "mbr.img"
    mbr = bytearray(512)
    struct.pack_into("<I", mbr, 0x1BE + 8, 1)
    img.write_bytes(bytes(mbr))
    new_size = 5000
    with open(img, "r+b") as fh:
        update_protective_mbr(fh.fileno(), new_size)
    data = img.read_bytes()
    assert data[0x1BE + 5:0x1BE + 8] == b"\xfe\xff\xff"
    assert struct.unpack_from("<I", data, 0x1BE + 12)[0] == new_size - 1


def test_update_protective_mbr_clamps(tmp_path):
    img = tmp_path / "mbr.img"
    mbr = bytearray(512)
    struct.pack_into("<I", mbr, 0x1BE + 8, 1)
    img.write_bytes(bytes(mbr))
    with open(img, "r+b") as fh:
        update_protective_mbr(fh.fileno(), 1 << 40)
    assert struct.unpack_from("<I", img.read_bytes(), 0x1BE + 12)[0] == 0xFFFFFFFF


def test_resize_gpt_partition(tmp_path):
    img = tmp_path / "gpt.img"
    total = 4 * MIB
    _make_image(img, 512, total)
    resize_gpt_partition(str(img), 0, 0)
    sectors = total // 512

    primary = _read_header(img, 512)
    assert primary.header_crc32 == primary.compute_crc()
    assert primary.alternate_lba == sectors - 1
    assert primary.my_lba == 1

    entries = _read(img, 1024, GPT_PT_ENTRY_SIZE)
    assert primary.partition_entry_array_crc32 == crc32(entries)
    entry = GptEntry.from_bytes(entries)
    assert entry.ending_lba % 2048 == 2047
    assert entry.ending_lba < primary.last_usable_lba

    secondary = _read_header(img, (sectors - 1) * 512)
    assert secondary.header_crc32 == secondary.compute_crc()
    assert secondary.my_lba == sectors - 1
    assert secondary.alternate_lba == 1
    assert secondary.partition_entry_lba == primary.last_usable_lba + 1
    assert _read(img, secondary.partition_entry_lba * 512, GPT_PT_ENTRY_SIZE) == entries


def test_resize_too_large(tmp_path):
    img = tmp_path / "gpt.img"
    total = 4 * MIB
    _make_image(img, 512, total)
    with pytest.raises(GptError):
        resize_gpt_partition(str(img), total // 512 + 1, 0)


def test_resize_bad_crc(tmp_path):
    img = tmp_path / "gpt.img"
    _make_image(img, 512, 4 * MIB, corrupt=True)
    with pytest.raises(GptError):
        resize_gpt_partition(str(img), 0, 0)


def test_resize_without_gpt_leaves_file(tmp_path):
    plain = tmp_path / "plain.img"
    content = bytes(range(256)) * 16
    plain.write_bytes(content)
    resize_gpt_partition(str(plain), 0, 0)
    assert plain.read_bytes() == content


def test_check_and_repair_keeps_matching_gpt(tmp_path):
    img = tmp_path / "gpt.img"
    _make_image(img, 512, 4 * MIB)
    before = img.read_bytes()
    check_and_repair_gpt(str(img), 0)
    assert img.read_bytes() == before


def test_check_and_repair_converts_sector_size(tmp_path):
    img = tmp_path / "gpt4k.img"
    original = _make_image(img, 4096, 8 * MIB, start_lba=256)
    assert has_partition(str(img)) is False
    check_and_repair_gpt(str(img), 0)
    assert has_partition(str(img)) is True
    hdr = _read_header(img, 512)
    assert hdr.header_crc32 == hdr.compute_crc()
    assert hdr.my_lba == 1
    assert hdr.partition_entry_lba == 2
    entry = GptEntry.from_bytes(_read(img, 1024, GPT_PT_ENTRY_SIZE))
    assert entry.starting_lba == original.starting_lba * 4096 // 512