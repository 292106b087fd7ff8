"""
Export coordination module.

Drives collect -> build -> deliver -> commit for each export job and
guarantees at most one job in flight per scope.
"""

from .coordinator import (
    CommitResult,
    ExportCoordinator,
    ExportError,
    ExportJob,
    ExportResult,
    ExportScope,
    JobNotFoundError,
    JobState,
)

__all__ = [
    "CommitResult",
    "ExportCoordinator",
    "ExportError",
    "ExportJob",
    "ExportResult",
    "ExportScope",
    "JobNotFoundError",
    "JobState",
]
