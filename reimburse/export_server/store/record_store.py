"""
SQLite record store for reimbursement entries.

This module persists the records the export pipeline reads from and,
after a confirmed delivery, writes the claimed status back to.

Invariants:
    - One SQLite file per data directory
    - Every write runs in a single explicit transaction
    - mark_claimed() is atomic across the whole identifier set
    - Unknown status values read back as unclaimed

How to change safely:
    - Schema migrations must be backward compatible
    - Keep status wire values stable; they appear in exported CSV files
    - Use transactions for all write operations

Table schema:
    records:
        - record_id TEXT PRIMARY KEY (UUID)
        - recorded_at INTEGER (Unix ms, UTC)
        - project_code TEXT
        - note TEXT
        - status TEXT ("Yet to Claim" | "Claimed")
        - latitude REAL NULL
        - longitude REAL NULL
        - place_name TEXT NULL
        - amount REAL NULL
        - invoice_image BLOB NULL
        - payment_image BLOB NULL
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class RecordStoreError(Exception):
    """Base exception for record store operations."""

    pass


class RecordNotFoundError(RecordStoreError):
    """Record does not exist."""

    pass


class ClaimStatus(Enum):
    """Claim status of a reimbursement."""

    UNCLAIMED = "Yet to Claim"
    CLAIMED = "Claimed"

    @classmethod
    def parse(cls, value: str | None) -> ClaimStatus:
        """Parse a stored value, defaulting to UNCLAIMED."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNCLAIMED


@dataclass
class Reimbursement:
    """A single reimbursement record.

    Attributes:
        record_id: Unique identifier (UUID string)
        date: When the expense happened (timezone-aware)
        project_code: Project or tag the expense is billed to
        note: Free-text description
        status: Claim status
        latitude: Optional latitude
        longitude: Optional longitude
        place_name: Optional resolved place name
        amount: Optional amount
        invoice_image: Optional invoice image bytes (JPEG)
        payment_image: Optional payment screenshot bytes (JPEG)
    """

    record_id: str
    date: datetime
    project_code: str
    note: str
    status: ClaimStatus = ClaimStatus.UNCLAIMED
    latitude: float | None = None
    longitude: float | None = None
    place_name: str | None = None
    amount: float | None = None
    invoice_image: bytes | None = field(default=None, repr=False)
    payment_image: bytes | None = field(default=None, repr=False)

    @property
    def coordinate_text(self) -> str:
        """Coordinates as "lat, lon" with five decimals, or an em dash."""
        if self.latitude is not None and self.longitude is not None:
            return f"{self.latitude:.5f}, {self.longitude:.5f}"
        return "—"


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RecordStore:
    """SQLite store for reimbursement records.

    Thread safety:
        Each operation opens its own connection; SQLite serializes writers.
        Writes are additionally serialized with an asyncio lock.

    Example:
        >>> store = RecordStore("/var/lib/reimburse")
        >>> await store.initialize()
        >>> record = await store.create_record(project_code="ACME", note="Taxi")
        >>> await store.mark_claimed([record.record_id])
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "records.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the record store.

        Args:
            data_dir: Directory holding the SQLite file
            db_name: SQLite file name
            wal_mode: Enable SQLite WAL journal mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        """Path of the SQLite file."""
        return self.data_dir / self.db_name

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                record_id TEXT PRIMARY KEY,
                recorded_at INTEGER NOT NULL,
                project_code TEXT NOT NULL DEFAULT '',
                note TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                latitude REAL,
                longitude REAL,
                place_name TEXT,
                amount REAL,
                invoice_image BLOB,
                payment_image BLOB,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_records_status ON records(status, recorded_at DESC);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    def _row_to_record(self, row: sqlite3.Row) -> Reimbursement:
        return Reimbursement(
            record_id=row["record_id"],
            date=_from_ms(row["recorded_at"]),
            project_code=row["project_code"],
            note=row["note"],
            status=ClaimStatus.parse(row["status"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            place_name=row["place_name"],
            amount=row["amount"],
            invoice_image=row["invoice_image"],
            payment_image=row["payment_image"],
        )

    async def initialize(self) -> None:
        """Create the database file and schema if needed."""
        async with self._lock:
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info(f"Initialized record store: {self.db_path}")

    async def create_record(
        self,
        project_code: str,
        note: str,
        date: datetime | None = None,
        status: ClaimStatus = ClaimStatus.UNCLAIMED,
        latitude: float | None = None,
        longitude: float | None = None,
        place_name: str | None = None,
        amount: float | None = None,
        invoice_image: bytes | None = None,
        payment_image: bytes | None = None,
        record_id: str | None = None,
    ) -> Reimbursement:
        """Insert a new record.

        Args:
            project_code: Project or tag
            note: Free-text description
            date: Expense timestamp (defaults to now, UTC)
            status: Initial claim status
            latitude: Optional latitude
            longitude: Optional longitude
            place_name: Optional place name
            amount: Optional amount
            invoice_image: Optional invoice image bytes
            payment_image: Optional payment screenshot bytes
            record_id: Optional explicit identifier (generated if absent)

        Returns:
            The stored record
        """
        record = Reimbursement(
            record_id=record_id or str(uuid.uuid4()),
            date=date or datetime.now(timezone.utc),
            project_code=project_code,
            note=note,
            status=status,
            latitude=latitude,
            longitude=longitude,
            place_name=place_name,
            amount=amount,
            invoice_image=invoice_image,
            payment_image=payment_image,
        )

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        """
                        INSERT INTO records (record_id, recorded_at, project_code, note, status,
                                             latitude, longitude, place_name, amount,
                                             invoice_image, payment_image, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.record_id,
                            _to_ms(record.date),
                            record.project_code,
                            record.note,
                            record.status.value,
                            record.latitude,
                            record.longitude,
                            record.place_name,
                            record.amount,
                            record.invoice_image,
                            record.payment_image,
                            int(time.time() * 1000),
                        ),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        return record

    async def get_record(self, record_id: str) -> Reimbursement | None:
        """Fetch one record by id, or None."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE record_id = ?", (record_id,)
            ).fetchone()
        return self._row_to_record(row) if row else None

    async def get_records(self, record_ids: Iterable[str]) -> list[Reimbursement]:
        """Fetch records by id, in the requested order.

        Unknown identifiers are skipped.
        """
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return []

        placeholders = ",".join("?" for _ in ids)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM records WHERE record_id IN ({placeholders})", ids
            ).fetchall()

        by_id = {row["record_id"]: self._row_to_record(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    async def list_records(self, status: ClaimStatus | None = None) -> list[Reimbursement]:
        """List records, newest first.

        Args:
            status: Optional status filter

        Returns:
            Matching records ordered by date descending
        """
        with self._get_connection() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM records ORDER BY recorded_at DESC, record_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM records WHERE status = ? ORDER BY recorded_at DESC, record_id",
                    (status.value,),
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    async def set_status(self, record_id: str, status: ClaimStatus) -> Reimbursement:
        """Set the claim status of one record.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE records SET status = ?, updated_at = ? WHERE record_id = ?",
                    (status.value, int(time.time() * 1000), record_id),
                )
                if cursor.rowcount == 0:
                    raise RecordNotFoundError(f"Record not found: {record_id}")

        record = await self.get_record(record_id)
        assert record is not None
        return record

    async def mark_claimed(self, record_ids: Iterable[str]) -> int:
        """Mark a set of records as claimed in one transaction.

        Identifiers that no longer exist are ignored.

        Args:
            record_ids: Records to mark

        Returns:
            Number of records whose status changed
        """
        ids = list(dict.fromkeys(record_ids))
        if not ids:
            return 0

        now = int(time.time() * 1000)
        changed = 0
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for record_id in ids:
                        cursor = conn.execute(
                            """
                            UPDATE records SET status = ?, updated_at = ?
                            WHERE record_id = ? AND status != ?
                            """,
                            (
                                ClaimStatus.CLAIMED.value,
                                now,
                                record_id,
                                ClaimStatus.CLAIMED.value,
                            ),
                        )
                        changed += cursor.rowcount
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        logger.info(
            "Marked records as claimed",
            extra={"requested": len(ids), "changed": changed},
        )
        return changed

    async def delete_record(self, record_id: str) -> bool:
        """Delete a record. Returns True if it existed."""
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM records WHERE record_id = ?", (record_id,))
        return cursor.rowcount > 0
