"""
Base protocol and types for delivery channels.

A delivery channel takes a built archive plus a suggested file name and
message text, hands it to something outside the process (a mail server,
an object store, a folder, a person looking at a share sheet) and reports
back how that ended.

Invariants:
    - deliver() resolves to exactly one DeliveryOutcome
    - Only DELIVERED allows the caller to commit record status
    - Channels never mutate records themselves

How to change safely:
    - Protocol changes require updating all implementations
    - New outcomes must be mapped in the export coordinator first
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig


class DeliveryError(Exception):
    """Base exception for delivery operations."""
    pass


class DeliveryConfigError(DeliveryError):
    """Delivery channel is not configured correctly."""
    pass


class DeliveryOutcome(Enum):
    """How a delivery attempt ended."""

    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class DeliveryRequest:
    """Archive hand-off to a delivery channel.

    Attributes:
        job_id: Export job the archive belongs to
        archive: Archive bytes
        file_name: Suggested file name
        subject: Optional prefilled message subject
        body: Optional prefilled message body
        recipients: Optional recipient addresses
        mime_type: Content type of the archive
    """
    job_id: str
    archive: bytes
    file_name: str
    subject: str | None = None
    body: str | None = None
    recipients: tuple[str, ...] = ()
    mime_type: str = "application/zip"

    def __repr__(self) -> str:
        return (
            f"DeliveryRequest(job_id={self.job_id!r}, file_name={self.file_name!r}, "
            f"size={len(self.archive)})"
        )


@runtime_checkable
class DeliveryChannel(Protocol):
    """Protocol for delivery channels.

    Example:
        >>> channel = LocalShareChannel("/tmp/exports")
        >>> outcome = await channel.deliver(request)
        >>> outcome is DeliveryOutcome.DELIVERED
        True
    """

    @abstractmethod
    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Deliver an archive.

        Args:
            request: Archive and message metadata

        Returns:
            Outcome reported by the channel

        Raises:
            DeliveryError: On unexpected channel failures (treated as FAILED
                by the coordinator)
        """
        ...


def create_delivery_channel(config: "ServerConfig") -> DeliveryChannel:
    """Factory function to create a delivery channel from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate DeliveryChannel implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import DeliveryBackend
    from .local import LocalShareChannel
    from .mail import MailDeliveryChannel
    from .memory import InMemoryDeliveryChannel
    from .s3 import S3ShareChannel

    if config.delivery_backend == DeliveryBackend.MEMORY:
        return InMemoryDeliveryChannel()
    elif config.delivery_backend == DeliveryBackend.MAIL:
        return MailDeliveryChannel(config.mail)
    elif config.delivery_backend == DeliveryBackend.S3:
        return S3ShareChannel(config.s3)
    elif config.delivery_backend == DeliveryBackend.LOCAL:
        return LocalShareChannel(config.share.share_dir)
    else:
        raise ValueError(f"Unsupported delivery backend: {config.delivery_backend}")
