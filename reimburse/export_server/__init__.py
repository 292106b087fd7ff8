"""
Reimburse export server - archive export pipeline for reimbursement records.

This package turns a selection of reimbursement records into a single ZIP
archive, hands it to a delivery channel and, only after the channel
confirms delivery, marks the records as claimed.

Architecture:
    ┌──────────────┐    ┌───────────────┐    ┌──────────────┐
    │ RecordStore  │───▶│ FileCollector │───▶│ ArchiveWriter│
    │  (SQLite)    │    │ (CSV/txt/jpg) │    │ (ZIP, CRC-32)│
    └──────▲───────┘    └───────────────┘    └──────┬───────┘
           │                                        │
           │ mark_claimed            ┌──────────────▼───────┐
           └─────────────────────────│  ExportCoordinator   │
                (on DELIVERED only)  │  (single-flight jobs)│
                                     └──────────┬───────────┘
                                                ▼
                                     ┌──────────────────────┐
                                     │   DeliveryChannel    │
                                     │ mail / s3 / local /  │
                                     │ in-memory            │
                                     └──────────────────────┘

Invariants:
    - Archives are store-only and byte-identical for identical input
    - Record status changes only after a confirmed delivery
    - At most one export job per scope is in flight

How to change safely:
    - Keep the ZIP record layouts fixed; external readers depend on them
    - Route every status change through the coordinator's commit step
"""

from ._version import __version__

__all__ = ["__version__"]
