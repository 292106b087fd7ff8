"""
File collector for reimbursement exports.

Turns a selected set of records into the ordered list of archive entries:

    reimbursements.csv                          (one row per record)
    <project>-<stamp>-<id8>-summary.txt         (per record)
    <project>-<stamp>-<id8>-invoice.jpg         (per record, if present)
    <project>-<stamp>-<id8>-payment.jpg         (per record, if present)

The same collector serves both the batch export and the single-record
export; only the table name and archive name differ.

Invariants:
    - Output order follows input order
    - Entry names are unique within one bundle
    - Missing images are omitted, never treated as errors
    - An empty selection yields an empty bundle
"""

from __future__ import annotations

import csv
import io
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..archive import Entry
from ..store import Reimbursement

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "id",
    "date",
    "projectCode",
    "note",
    "status",
    "placeName",
    "coordinate",
    "amount",
)

SUMMARY_SEPARATOR = "\n\n———\n\n"

_PATH_HOSTILE = re.compile(r'[/\\:*?"<>|\x00-\x1f\x7f]')


def sanitize_name(value: str, fallback: str = "untitled") -> str:
    """Replace path-hostile characters so a value can be used in a file name."""
    cleaned = _PATH_HOSTILE.sub("-", value).strip().strip(".")
    return cleaned or fallback


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_timestamp(value: datetime) -> str:
    """Round-trippable UTC timestamp, e.g. 2025-11-12T09:30:00Z."""
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def file_stamp(value: datetime) -> str:
    """Timestamp fragment used in entry names (UTC)."""
    return _as_utc(value).strftime("%Y-%m-%d_%H%M")


def display_timestamp(value: datetime) -> str:
    return _as_utc(value).strftime("%Y-%m-%d %H:%M")


def format_amount(amount: float, currency_symbol: str) -> str:
    return f"{currency_symbol}{amount:,.2f}"


def csv_row(record: Reimbursement) -> list[str]:
    """Render one record as CSV fields, in CSV_HEADER order."""
    return [
        record.record_id,
        iso_timestamp(record.date),
        record.project_code,
        record.note,
        record.status.value,
        record.place_name or "",
        record.coordinate_text,
        f"{record.amount:.2f}" if record.amount is not None else "",
    ]


def render_csv(records: Sequence[Reimbursement]) -> bytes:
    """Render the tabular summary: header row plus one row per record."""
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=",", quotechar='"', lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow(csv_row(record))
    return buf.getvalue().encode("utf-8")


def render_summary(record: Reimbursement, currency_symbol: str = "₹") -> str:
    """Render the human-readable summary of one record."""
    lines = [
        f"Project: {record.project_code}",
        f"Date: {display_timestamp(record.date)}",
        f"Status: {record.status.value}",
    ]
    if record.amount is not None:
        lines.append(f"Amount: {format_amount(record.amount, currency_symbol)}")
    if record.place_name:
        lines.append(f"Place: {record.place_name}")
    if record.latitude is not None and record.longitude is not None:
        lines.append(f"Coords: {record.coordinate_text}")
    lines.append(f"Description: \n{record.note}")
    return "\n".join(lines)


def record_stem(record: Reimbursement) -> str:
    """Collision-resistant name stem for one record's files."""
    return "-".join(
        [
            sanitize_name(record.project_code),
            file_stamp(record.date),
            sanitize_name(record.record_id[:8], fallback="record"),
        ]
    )


@dataclass
class ExportBundle:
    """Everything a delivery needs besides the archive bytes.

    Attributes:
        entries: Ordered archive entries
        archive_name: Suggested archive file name
        subject: Suggested message subject
        body: Suggested message body
        record_ids: Records the bundle was built from
    """

    entries: list[Entry] = field(default_factory=list)
    archive_name: str = ""
    subject: str = ""
    body: str = ""
    record_ids: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.entries


class FileCollector:
    """Renders records into archive entries.

    Attributes:
        batch_table_name: CSV entry name for multi-record exports
        single_table_name: CSV entry name for single-record exports
        batch_archive_name: Archive file name for multi-record exports
        currency_symbol: Prefix used for amounts in summaries

    Example:
        >>> collector = FileCollector()
        >>> bundle = collector.collect(records)
        >>> [e.name for e in bundle.entries][0]
        'reimbursements.csv'
    """

    def __init__(
        self,
        batch_table_name: str = "reimbursements.csv",
        single_table_name: str = "reimbursement.csv",
        batch_archive_name: str = "reimbursements.zip",
        currency_symbol: str = "₹",
    ) -> None:
        self.batch_table_name = batch_table_name
        self.single_table_name = single_table_name
        self.batch_archive_name = batch_archive_name
        self.currency_symbol = currency_symbol

    def collect_entries(self, records: Sequence[Reimbursement], single: bool = False) -> list[Entry]:
        """Render records into ordered archive entries.

        Args:
            records: Selected records, in output order
            single: Use the single-record table name

        Returns:
            Entries, or an empty list when no records are given
        """
        if not records:
            return []

        table_name = self.single_table_name if single else self.batch_table_name
        entries = [Entry(table_name, render_csv(records))]
        used = {table_name}

        for record in records:
            stem = record_stem(record)
            files: list[tuple[str, bytes]] = [
                (f"{stem}-summary.txt", render_summary(record, self.currency_symbol).encode("utf-8"))
            ]
            if record.invoice_image is not None:
                files.append((f"{stem}-invoice.jpg", record.invoice_image))
            if record.payment_image is not None:
                files.append((f"{stem}-payment.jpg", record.payment_image))

            for name, payload in files:
                name = _dedupe(name, used)
                used.add(name)
                entries.append(Entry(name, payload))

        return entries

    def collect(
        self,
        records: Sequence[Reimbursement],
        single: bool = False,
        now: datetime | None = None,
    ) -> ExportBundle:
        """Render records into a complete bundle.

        Args:
            records: Selected records
            single: Treat as a single-record export (requires one record)
            now: Time used in the batch subject line

        Returns:
            ExportBundle (empty when records is empty)
        """
        if single and len(records) != 1:
            raise ValueError(f"Single-record export needs exactly one record, got {len(records)}")

        entries = self.collect_entries(records, single=single)
        if not entries:
            return ExportBundle()

        if single:
            record = records[0]
            archive_name = f"{sanitize_name(record.project_code)}-{file_stamp(record.date)}.zip"
            subject = (
                f"Reimbursement claim — {record.project_code} — {display_timestamp(record.date)}"
            )
        else:
            stamp = display_timestamp(now or datetime.now(timezone.utc))
            archive_name = self.batch_archive_name
            subject = f"Reimbursement claim ({len(records)}) — {stamp}"

        body = SUMMARY_SEPARATOR.join(render_summary(r, self.currency_symbol) for r in records)

        return ExportBundle(
            entries=entries,
            archive_name=archive_name,
            subject=subject,
            body=body,
            record_ids=tuple(r.record_id for r in records),
        )


def _dedupe(name: str, used: set[str]) -> str:
    if name not in used:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    n = 2
    while True:
        candidate = f"{stem}-{n}.{ext}" if ext else f"{stem}-{n}"
        if candidate not in used:
            return candidate
        n += 1
