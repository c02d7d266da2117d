"""CRC-32 (IEEE 802.3, reflected) as used by GPT headers."""

from __future__ import annotations

import zlib


def crc32(data: bytes) -> int:
    """Return the CRC-32 of ``data`` as an unsigned 32-bit integer."""
    return zlib.crc32(bytes(data)) & 0xFFFFFFFF