"""
S3 share channel.

Uploads the archive to an S3-compatible bucket, the server-side
equivalent of a generic share action.

Object layout:
    s3://<bucket>/<prefix>/<job_id>/<file_name>

Invariants:
    - DELIVERED only after put_object returned successfully
    - One object per job; job ids are unique so keys never collide
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .base import DeliveryConfigError, DeliveryOutcome, DeliveryRequest

logger = logging.getLogger(__name__)


class S3ShareChannel:
    """Uploads archives to S3.

    Attributes:
        s3_config: S3Config instance

    Example:
        >>> channel = S3ShareChannel(S3Config.from_env())
        >>> await channel.deliver(request)
    """

    def __init__(self, s3_config: Any) -> None:
        if not s3_config.bucket:
            raise DeliveryConfigError("S3 bucket is required for S3 delivery")
        self.s3_config = s3_config
        self._session = get_session()

    def _client_kwargs(self) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        return client_kwargs

    def build_key(self, request: DeliveryRequest) -> str:
        """Build the object key for a request."""
        prefix = self.s3_config.prefix.strip("/")
        key = f"{request.job_id}/{request.file_name}"
        return f"{prefix}/{key}" if prefix else key

    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Upload the archive."""
        key = self.build_key(request)
        metadata = {"job-id": request.job_id}
        if request.subject:
            # S3 user metadata must be ASCII
            metadata["subject"] = request.subject.encode("ascii", "replace").decode("ascii")

        try:
            async with self._session.create_client("s3", **self._client_kwargs()) as s3:
                await s3.put_object(
                    Bucket=self.s3_config.bucket,
                    Key=key,
                    Body=request.archive,
                    ContentType=request.mime_type,
                    Metadata=metadata,
                )
        except (BotoCoreError, ClientError) as e:
            logger.error(
                f"S3 upload failed: {e}",
                extra={"job_id": request.job_id, "bucket": self.s3_config.bucket, "s3_key": key},
            )
            return DeliveryOutcome.FAILED

        logger.info(
            "Uploaded export archive",
            extra={
                "job_id": request.job_id,
                "bucket": self.s3_config.bucket,
                "s3_key": key,
                "size_bytes": len(request.archive),
            },
        )
        return DeliveryOutcome.DELIVERED
