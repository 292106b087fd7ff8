"""
Unit tests for the store-only ZIP writer.

Tests cover:
- Byte layout of local headers, central directory and end record
- Offsets and checksums recorded in the directory
- Interoperability with the standard zipfile reader
- Empty archives, determinism and limits
"""

import io
import struct
import zipfile
import zlib

import pytest

from reimburse.export_server.archive.zip_writer import (
    DOS_EPOCH_DATE,
    FLAG_UTF8,
    ArchiveLimitError,
    ArchiveWriter,
    Entry,
    build_archive,
)

SAMPLE = [
    Entry("a.txt", b"hello"),
    Entry("b.bin", bytes([0xDE, 0xAD, 0xBE, 0xEF])),
]


def parse_eocd(data: bytes) -> dict:
    fields = struct.unpack("<IHHHHIIH", data[-22:])
    keys = (
        "signature",
        "disk",
        "cd_disk",
        "disk_entries",
        "total_entries",
        "cd_size",
        "cd_offset",
        "comment_length",
    )
    return dict(zip(keys, fields))


def parse_central_directory(data: bytes) -> list[dict]:
    eocd = parse_eocd(data)
    records = []
    pos = eocd["cd_offset"]
    for _ in range(eocd["total_entries"]):
        fields = struct.unpack("<IHHHHHHIIIHHHHHII", data[pos : pos + 46])
        name_len = fields[10]
        records.append(
            {
                "signature": fields[0],
                "version_made_by": fields[1],
                "version_needed": fields[2],
                "flags": fields[3],
                "method": fields[4],
                "time": fields[5],
                "date": fields[6],
                "crc": fields[7],
                "compressed_size": fields[8],
                "size": fields[9],
                "extra_length": fields[11],
                "comment_length": fields[12],
                "offset": fields[16],
                "name": data[pos + 46 : pos + 46 + name_len],
            }
        )
        pos += 46 + name_len
    return records


class TestArchiveLayout:
    """Byte-level layout checks."""

    def test_end_to_end_scenario(self):
        """Two entries: signature, checksum and end record."""
        data = build_archive(SAMPLE)

        assert data[:4] == bytes([0x50, 0x4B, 0x03, 0x04])
        crc = struct.unpack("<I", data[14:18])[0]
        assert crc == 0x3610A686

        eocd = parse_eocd(data)
        assert eocd["signature"] == 0x06054B50
        assert eocd["disk_entries"] == 2
        assert eocd["total_entries"] == 2
        assert eocd["comment_length"] == 0

    def test_exact_sizes(self):
        """Total size is headers + names + payloads + directory + end record."""
        data = build_archive(SAMPLE)
        local = (30 + 5 + 5) + (30 + 5 + 4)
        central = (46 + 5) * 2
        assert len(data) == local + central + 22

        eocd = parse_eocd(data)
        assert eocd["cd_offset"] == local
        assert eocd["cd_size"] == central

    def test_local_header_fields(self):
        """First local header carries the fixed store-only fields."""
        data = build_archive(SAMPLE)
        (
            signature,
            version,
            flags,
            method,
            mod_time,
            mod_date,
            crc,
            csize,
            usize,
            name_len,
            extra_len,
        ) = struct.unpack("<IHHHHHIIIHH", data[:30])

        assert signature == 0x04034B50
        assert version == 20
        assert flags == 0
        assert method == 0
        assert mod_time == 0
        assert mod_date == DOS_EPOCH_DATE
        assert crc == zlib.crc32(b"hello")
        assert csize == usize == 5
        assert name_len == 5
        assert extra_len == 0
        assert data[30:35] == b"a.txt"
        assert data[35:40] == b"hello"

    def test_central_directory_offsets_match_local_headers(self):
        """Every recorded offset points at a local header signature."""
        entries = [Entry(f"file{i}.txt", b"x" * i) for i in range(6)]
        data = build_archive(entries)

        records = parse_central_directory(data)
        assert [r["name"] for r in records] == [e.name.encode() for e in entries]

        expected_offset = 0
        for entry, record in zip(entries, records):
            assert record["offset"] == expected_offset
            assert data[record["offset"] : record["offset"] + 4] == b"PK\x03\x04"
            expected_offset += 30 + len(entry.name.encode()) + len(entry.payload)

    def test_central_directory_checksums(self):
        """Stored checksums equal an independent CRC of each payload."""
        entries = [Entry("one", b"first"), Entry("two", b""), Entry("three", bytes(range(256)))]
        records = parse_central_directory(build_archive(entries))

        for entry, record in zip(entries, records):
            assert record["crc"] == zlib.crc32(entry.payload)
            assert record["size"] == record["compressed_size"] == len(entry.payload)
            assert record["signature"] == 0x02014B50
            assert record["version_made_by"] == 20
            assert record["version_needed"] == 20
            assert record["method"] == 0
            assert record["extra_length"] == 0
            assert record["comment_length"] == 0

    def test_legacy_zero_timestamps(self):
        """Legacy mode writes zero date and time everywhere."""
        data = build_archive(SAMPLE, legacy_zero_timestamps=True)
        assert struct.unpack("<HH", data[10:14]) == (0, 0)
        for record in parse_central_directory(data):
            assert record["date"] == 0
            assert record["time"] == 0

    def test_utf8_flag_only_for_non_ascii_names(self):
        """ASCII names keep flags zero; others set the UTF-8 bit."""
        data = build_archive([Entry("plain.txt", b"a"), Entry("café.txt", b"b")])
        records = parse_central_directory(data)
        assert records[0]["flags"] == 0
        assert records[1]["flags"] == FLAG_UTF8
        assert records[1]["name"] == "café.txt".encode("utf-8")


class TestArchiveInterop:
    """Reading archives back with zipfile."""

    def test_zipfile_recovers_entries(self):
        """Names and payloads round-trip through a standard reader."""
        entries = SAMPLE + [Entry("dir/c.csv", b"id,date\n1,2\n"), Entry("empty", b"")]
        with zipfile.ZipFile(io.BytesIO(build_archive(entries))) as zf:
            assert zf.testzip() is None
            assert zf.namelist() == [e.name for e in entries]
            for entry in entries:
                info = zf.getinfo(entry.name)
                assert info.compress_type == zipfile.ZIP_STORED
                assert zf.read(entry.name) == entry.payload

    def test_zipfile_reads_epoch_date(self):
        """Default timestamps decode as 1980-01-01 00:00."""
        with zipfile.ZipFile(io.BytesIO(build_archive(SAMPLE))) as zf:
            assert zf.getinfo("a.txt").date_time == (1980, 1, 1, 0, 0, 0)

    def test_zipfile_reads_unicode_name(self):
        """Non-ASCII names decode correctly."""
        with zipfile.ZipFile(io.BytesIO(build_archive([Entry("reçu-₹.txt", b"ok")]))) as zf:
            assert zf.namelist() == ["reçu-₹.txt"]

    def test_empty_archive(self):
        """No entries gives a 22-byte end record that readers accept."""
        data = build_archive([])
        assert len(data) == 22

        eocd = parse_eocd(data)
        assert eocd["total_entries"] == 0
        assert eocd["cd_size"] == 0
        assert eocd["cd_offset"] == 0

        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert zf.namelist() == []


class TestArchiveWriter:
    """Tests for the incremental writer."""

    def test_deterministic(self):
        """Same entries, byte-identical output."""
        assert build_archive(SAMPLE) == build_archive(list(SAMPLE))

    def test_order_preserved(self):
        """Reordering entries changes the output order."""
        forward = parse_central_directory(build_archive(SAMPLE))
        backward = parse_central_directory(build_archive(list(reversed(SAMPLE))))
        assert [r["name"] for r in forward] == [b"a.txt", b"b.bin"]
        assert [r["name"] for r in backward] == [b"b.bin", b"a.txt"]

    def test_written_offsets(self):
        """add() reports the running offset."""
        writer = ArchiveWriter()
        first = writer.add(SAMPLE[0])
        second = writer.add(SAMPLE[1])
        assert first.local_header_offset == 0
        assert second.local_header_offset == 40
        assert writer.offset == 79

    def test_entry_properties(self):
        """Entry exposes checksum and length of its payload."""
        entry = Entry("a.txt", b"hello")
        assert entry.checksum == 0x3610A686
        assert entry.byte_length == 5

    def test_single_use(self):
        """A finished writer rejects further use."""
        writer = ArchiveWriter()
        writer.finish()
        with pytest.raises(RuntimeError):
            writer.add(Entry("late", b""))
        with pytest.raises(RuntimeError):
            writer.finish()

    def test_name_too_long(self):
        """Names that do not fit in 16 bits are rejected."""
        with pytest.raises(ArchiveLimitError):
            build_archive([Entry("n" * 70000, b"")])

    def test_empty_name_allowed(self):
        """An empty name is legal."""
        records = parse_central_directory(build_archive([Entry("", b"data")]))
        assert records[0]["name"] == b""
