"""
Store-only ZIP archive writer.

Builds a complete ZIP container in memory from an ordered list of named
payloads. Entries are stored uncompressed (method 0), so the output is a
pure function of the entry sequence and suitable for golden-file tests.

Archive layout:
    [local header 1][name 1][payload 1]
    [local header 2][name 2][payload 2]
    ...
    [central directory record 1] ... [central directory record N]
    [end of central directory record]

All integers are little-endian. Signatures:
    local file header          0x04034B50
    central directory record   0x02014B50
    end of central directory   0x06054B50

Invariants:
    - Entry order is preserved verbatim; the first entry sits at offset 0
    - Each entry's CRC is computed from its exact payload when written
    - Central directory offsets equal the real local header positions
    - Output never depends on wall-clock time

How to change safely:
    - Any header change must keep the fixed 30/46/22 byte record sizes
    - Verify new behavior against zipfile and at least one external reader
    - ZIP64 is not supported; keep the limit checks in sync with the
      field widths if that ever changes
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterable
from dataclasses import dataclass

from .checksum import crc32

logger = logging.getLogger(__name__)

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_DIRECTORY_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06054B50

VERSION = 20
METHOD_STORE = 0
FLAG_UTF8 = 0x0800

# 1980-01-01 00:00:00 in MS-DOS packed form
DOS_EPOCH_DATE = (0 << 9) | (1 << 5) | 1
DOS_EPOCH_TIME = 0

LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
CENTRAL_DIRECTORY_RECORD = struct.Struct("<IHHHHHHIIIHHHHHII")
END_OF_CENTRAL_DIRECTORY = struct.Struct("<IHHHHIIH")

MAX_ENTRIES = 0xFFFF
MAX_NAME_BYTES = 0xFFFF
MAX_UINT32 = 0xFFFFFFFF


class ArchiveLimitError(ValueError):
    """Archive exceeds what a classic (non-ZIP64) container can describe."""

    pass


@dataclass(frozen=True)
class Entry:
    """One named payload destined for the archive.

    Attributes:
        name: Entry path inside the archive, written as UTF-8
        payload: Raw bytes stored verbatim
    """

    name: str
    payload: bytes

    @property
    def checksum(self) -> int:
        """CRC-32 of the payload."""
        return crc32(self.payload)

    @property
    def byte_length(self) -> int:
        """Payload length in bytes."""
        return len(self.payload)


@dataclass(frozen=True)
class WrittenEntry:
    """Bookkeeping for an entry already emitted by ArchiveWriter."""

    name_bytes: bytes
    checksum: int
    size: int
    flags: int
    local_header_offset: int


class ArchiveWriter:
    """Incremental in-memory ZIP writer.

    Entries are appended with add(); finish() appends the central
    directory and end record and returns the complete buffer. A writer
    is single-use.

    Example:
        >>> writer = ArchiveWriter()
        >>> writer.add(Entry("a.txt", b"hello"))
        >>> data = writer.finish()
    """

    def __init__(self, legacy_zero_timestamps: bool = False) -> None:
        """Initialize the writer.

        Args:
            legacy_zero_timestamps: Write all-zero modification date/time
                fields instead of the 1980-01-01 DOS epoch
        """
        if legacy_zero_timestamps:
            self._mod_date, self._mod_time = 0, 0
        else:
            self._mod_date, self._mod_time = DOS_EPOCH_DATE, DOS_EPOCH_TIME
        self._buffer = bytearray()
        self._written: list[WrittenEntry] = []
        self._finished = False

    @property
    def offset(self) -> int:
        """Number of bytes emitted so far."""
        return len(self._buffer)

    @property
    def written(self) -> list[WrittenEntry]:
        """Entries emitted so far, in order."""
        return list(self._written)

    def add(self, entry: Entry) -> WrittenEntry:
        """Append a local header, name and payload for one entry.

        Args:
            entry: Entry to write

        Returns:
            WrittenEntry with the checksum and local header offset

        Raises:
            ArchiveLimitError: If the entry cannot be described without ZIP64
            RuntimeError: If finish() was already called
        """
        if self._finished:
            raise RuntimeError("Archive already finished")
        if len(self._written) >= MAX_ENTRIES:
            raise ArchiveLimitError(f"Too many entries (max {MAX_ENTRIES})")

        name_bytes = entry.name.encode("utf-8")
        if len(name_bytes) > MAX_NAME_BYTES:
            raise ArchiveLimitError(f"Entry name too long: {len(name_bytes)} bytes")

        size = len(entry.payload)
        local_header_offset = self.offset
        if size > MAX_UINT32 or local_header_offset > MAX_UINT32:
            raise ArchiveLimitError(f"Entry {entry.name!r} exceeds 4 GiB limits")

        flags = 0 if name_bytes.isascii() else FLAG_UTF8
        checksum = crc32(entry.payload)

        self._buffer += LOCAL_HEADER.pack(
            LOCAL_HEADER_SIGNATURE,
            VERSION,
            flags,
            METHOD_STORE,
            self._mod_time,
            self._mod_date,
            checksum,
            size,  # compressed size
            size,  # uncompressed size
            len(name_bytes),
            0,  # extra field length
        )
        self._buffer += name_bytes
        self._buffer += entry.payload

        written = WrittenEntry(
            name_bytes=name_bytes,
            checksum=checksum,
            size=size,
            flags=flags,
            local_header_offset=local_header_offset,
        )
        self._written.append(written)
        return written

    def finish(self) -> bytes:
        """Append the central directory and end record.

        Returns:
            The complete archive

        Raises:
            ArchiveLimitError: If the central directory lies beyond 4 GiB
        """
        if self._finished:
            raise RuntimeError("Archive already finished")

        central_start = self.offset
        if central_start > MAX_UINT32:
            raise ArchiveLimitError("Central directory offset exceeds 4 GiB")

        for w in self._written:
            self._buffer += CENTRAL_DIRECTORY_RECORD.pack(
                CENTRAL_DIRECTORY_SIGNATURE,
                VERSION,  # version made by
                VERSION,  # version needed
                w.flags,
                METHOD_STORE,
                self._mod_time,
                self._mod_date,
                w.checksum,
                w.size,
                w.size,
                len(w.name_bytes),
                0,  # extra field length
                0,  # comment length
                0,  # disk number start
                0,  # internal attributes
                0,  # external attributes
                w.local_header_offset,
            )
            self._buffer += w.name_bytes

        central_size = self.offset - central_start
        count = len(self._written)
        self._buffer += END_OF_CENTRAL_DIRECTORY.pack(
            END_OF_CENTRAL_DIRECTORY_SIGNATURE,
            0,  # this disk
            0,  # disk with central directory
            count,
            count,
            central_size,
            central_start,
            0,  # comment length
        )

        self._finished = True
        return bytes(self._buffer)


def build_archive(entries: Iterable[Entry], legacy_zero_timestamps: bool = False) -> bytes:
    """Build a store-only ZIP archive from an ordered entry sequence.

    An empty sequence yields the 22-byte empty archive (end record only).

    Args:
        entries: Entries in archive order
        legacy_zero_timestamps: Write zero date/time fields

    Returns:
        Archive bytes

    Raises:
        ArchiveLimitError: If the input exceeds classic ZIP limits
    """
    writer = ArchiveWriter(legacy_zero_timestamps=legacy_zero_timestamps)
    for entry in entries:
        writer.add(entry)
    data = writer.finish()
    logger.debug(
        "Built archive",
        extra={"entries": len(writer.written), "size_bytes": len(data)},
    )
    return data
