"""
Delivery channel abstraction for the export server.

This module provides a pluggable delivery interface supporting:
- SMTP mail with the archive attached
- S3 upload (share link workflows)
- Local folder
- In-memory (testing and interactive resolution over HTTP)

Invariants:
    - A channel reports exactly one outcome per request
    - Record status is committed only on DELIVERED, by the coordinator

How to change safely:
    - New backends must implement the DeliveryChannel protocol
    - Map every failure to FAILED rather than raising where possible
"""

from .base import (
    DeliveryChannel,
    DeliveryConfigError,
    DeliveryError,
    DeliveryOutcome,
    DeliveryRequest,
    create_delivery_channel,
)
from .local import LocalShareChannel
from .mail import MailDeliveryChannel
from .memory import InMemoryDeliveryChannel
from .s3 import S3ShareChannel

__all__ = [
    # Protocol and types
    "DeliveryChannel",
    "DeliveryRequest",
    "DeliveryOutcome",
    "DeliveryError",
    "DeliveryConfigError",
    # Factory
    "create_delivery_channel",
    # Implementations
    "InMemoryDeliveryChannel",
    "LocalShareChannel",
    "MailDeliveryChannel",
    "S3ShareChannel",
]
