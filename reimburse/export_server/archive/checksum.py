"""
CRC-32 checksum engine for archive entries.

Implements the IEEE 802.3 CRC-32 (reflected polynomial 0xEDB88320) used by
ZIP local headers and central directory records.

Invariants:
    - The lookup table is built once per process and never mutated
    - crc32() is pure: identical input always yields the same value
    - Results match zlib.crc32 / binascii.crc32 bit for bit

How to change safely:
    - Never change the polynomial, init value or final XOR; archives
      written by this module would stop validating in standard readers
"""

from __future__ import annotations

POLYNOMIAL = 0xEDB88320
INITIAL_VALUE = 0xFFFFFFFF
FINAL_XOR = 0xFFFFFFFF


def _build_table(polynomial: int = POLYNOMIAL) -> tuple[int, ...]:
    """Build the 256-entry lookup table for a reflected polynomial."""
    table = []
    for i in range(256):
        c = i
        for _ in range(8):
            if c & 1:
                c = polynomial ^ (c >> 1)
            else:
                c >>= 1
        table.append(c)
    return tuple(table)


CRC_TABLE: tuple[int, ...] = _build_table()


def crc32(data: bytes, value: int = 0) -> int:
    """Compute the CRC-32 of a byte sequence.

    Args:
        data: Bytes to checksum
        value: Previous checksum when computing incrementally (0 to start)

    Returns:
        Unsigned 32-bit checksum

    Example:
        >>> hex(crc32(b"hello"))
        '0x3610a686'
    """
    crc = value ^ INITIAL_VALUE
    table = CRC_TABLE
    for b in data:
        crc = (crc >> 8) ^ table[(crc ^ b) & 0xFF]
    return crc ^ FINAL_XOR
