"""Tools for ploop disk images: logging, locks, GPT, extent maps, sysfs and filesystem helpers."""

__version__ = "1.13.2"

__all__ = [
    "cleanup",
    "crc32",
    "extents",
    "fiemap",
    "fsutils",
    "gpt",
    "lock",
    "log",
    "sysfs",
]