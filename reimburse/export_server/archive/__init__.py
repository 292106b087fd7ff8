"""
Archive module for the export server.

This module packages rendered export files into a single ZIP container:
- CRC-32 checksum engine
- Store-only (uncompressed) ZIP writer

Invariants:
    - Output is byte-identical for identical entry sequences
    - Archives are readable by any reader supporting the store method
"""

from .checksum import crc32
from .zip_writer import ArchiveLimitError, ArchiveWriter, Entry, build_archive

__all__ = ["crc32", "Entry", "ArchiveWriter", "ArchiveLimitError", "build_archive"]
