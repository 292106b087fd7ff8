"""
Record store module.

Persistent reimbursement records read by the export pipeline. The
pipeline only reads records and, after a confirmed delivery, flips their
status to claimed.
"""

from .record_store import (
    ClaimStatus,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
    Reimbursement,
)

__all__ = [
    "ClaimStatus",
    "Reimbursement",
    "RecordStore",
    "RecordStoreError",
    "RecordNotFoundError",
]
