"""
Collector module.

Renders selected records into named archive entries (CSV table, text
summaries, images) plus the suggested archive name and message text.
"""

from .collector import (
    CSV_HEADER,
    SUMMARY_SEPARATOR,
    ExportBundle,
    FileCollector,
    render_csv,
    render_summary,
    sanitize_name,
)

__all__ = [
    "CSV_HEADER",
    "SUMMARY_SEPARATOR",
    "ExportBundle",
    "FileCollector",
    "render_csv",
    "render_summary",
    "sanitize_name",
]
