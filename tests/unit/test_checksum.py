"""
Unit tests for the CRC-32 checksum engine.

Tests cover:
- Known check values
- Agreement with zlib
- Incremental computation
"""

import os
import zlib

from reimburse.export_server.archive.checksum import CRC_TABLE, crc32


class TestCrc32:
    """Tests for crc32()."""

    def test_empty_input(self):
        """Empty input has checksum zero."""
        assert crc32(b"") == 0

    def test_hello(self):
        """Known value for b"hello"."""
        assert crc32(b"hello") == 0x3610A686

    def test_standard_check_value(self):
        """The CRC-32 catalogue check value for "123456789"."""
        assert crc32(b"123456789") == 0xCBF43926

    def test_matches_zlib(self):
        """Agrees with zlib for arbitrary payloads."""
        for size in (1, 7, 256, 4099):
            data = os.urandom(size)
            assert crc32(data) == zlib.crc32(data)

    def test_incremental(self):
        """Feeding chunks with the running value equals one pass."""
        data = b"The quick brown fox jumps over the lazy dog"
        running = 0
        for i in range(0, len(data), 5):
            running = crc32(data[i : i + 5], running)
        assert running == crc32(data) == 0x414FA339

    def test_deterministic(self):
        """Same input, same output."""
        data = bytes([0xDE, 0xAD, 0xBE, 0xEF])
        assert crc32(data) == crc32(data)

    def test_table_shape(self):
        """Table has 256 entries built from the reflected polynomial."""
        assert len(CRC_TABLE) == 256
        assert CRC_TABLE[0] == 0
        assert CRC_TABLE[128] == 0xEDB88320
        assert all(0 <= v <= 0xFFFFFFFF for v in CRC_TABLE)
