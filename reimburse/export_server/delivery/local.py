"""
Local folder share channel.

Writes the archive into a directory, replacing any file of the same name
atomically (temp file + rename).
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from .base import DeliveryOutcome, DeliveryRequest

logger = logging.getLogger(__name__)


class LocalShareChannel:
    """Saves archives to a local directory.

    Attributes:
        share_dir: Destination directory (created on first delivery)
    """

    def __init__(self, share_dir: str) -> None:
        self.share_dir = Path(share_dir)

    def _write(self, request: DeliveryRequest) -> Path:
        self.share_dir.mkdir(parents=True, exist_ok=True)
        target = self.share_dir / Path(request.file_name).name

        fd, tmp_name = tempfile.mkstemp(dir=self.share_dir, prefix=".export-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(request.archive)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Write the archive to the share directory."""
        try:
            path = await asyncio.to_thread(self._write, request)
        except OSError as e:
            logger.error(f"Failed to write archive: {e}", extra={"job_id": request.job_id})
            return DeliveryOutcome.FAILED

        logger.info(
            "Saved export archive",
            extra={"job_id": request.job_id, "path": str(path), "size_bytes": len(request.archive)},
        )
        return DeliveryOutcome.DELIVERED
