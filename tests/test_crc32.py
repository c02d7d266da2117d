import pytest

from ploopkit.crc32 import crc32


def test_standard_check_value():
    assert crc32(b"123456789") == 0xCBF43926


def test_known_sentence():
    assert crc32(b"The quick brown fox jumps over the lazy dog") == 0x414FA339


def test_empty_input():
    assert crc32(b"") == 0


@pytest.mark.parametrize("wrap", [bytes, bytearray, memoryview])
def test_accepts_bytes_like(wrap):
    assert crc32(wrap(b"123456789")) == crc32(b"123456789")


def test_result_is_unsigned_32bit():
    value = crc32(bytes(range(256)) * 4)
    assert 0 <= value <= 0xFFFFFFFF


def test_single_bit_change_alters_crc():
    data = bytearray(b"\x00" * 92)
    base = crc32(data)
    data[10] ^= 0x01
    assert crc32(data) != base


def test_appending_crc_gives_constant_residue():
    first = b"GPT header one"
    second = b"another header"
    residue_a = crc32(first + crc32(first).to_bytes(4, "little"))
    residue_b = crc32(second + crc32(second).to_bytes(4, "little"))
    assert residue_a == residue_b