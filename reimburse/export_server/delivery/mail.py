"""
SMTP mail delivery channel.

Composes a message with the archive attached and sends it through an SMTP
relay. Sending is blocking, so it runs on a worker thread.

Invariants:
    - DELIVERED only after the SMTP server accepted the message
    - No recipients means nothing was sent: CANCELLED
    - Credentials are never logged
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from .base import DeliveryConfigError, DeliveryOutcome, DeliveryRequest

logger = logging.getLogger(__name__)


class MailDeliveryChannel:
    """Delivers archives as e-mail attachments.

    Attributes:
        mail_config: MailConfig instance (host, port, credentials, sender)

    Example:
        >>> channel = MailDeliveryChannel(MailConfig.from_env())
        >>> await channel.deliver(request)
    """

    def __init__(self, mail_config: Any) -> None:
        if not mail_config.host:
            raise DeliveryConfigError("SMTP host is required for mail delivery")
        if not mail_config.sender:
            raise DeliveryConfigError("Sender address is required for mail delivery")
        self.mail_config = mail_config

    def build_message(self, request: DeliveryRequest) -> MIMEMultipart:
        """Compose the MIME message for a request."""
        msg = MIMEMultipart()
        msg["Subject"] = request.subject or request.file_name
        msg["From"] = self.mail_config.sender
        msg["To"] = ", ".join(request.recipients)

        msg.attach(MIMEText(request.body or "", "plain", "utf-8"))

        _, _, subtype = request.mime_type.partition("/")
        attachment = MIMEApplication(request.archive, _subtype=subtype or "octet-stream")
        attachment.add_header("Content-Disposition", "attachment", filename=request.file_name)
        msg.attach(attachment)
        return msg

    def _send(self, msg: MIMEMultipart, recipients: tuple[str, ...]) -> None:
        cfg = self.mail_config
        with smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds) as server:
            if cfg.use_tls:
                server.starttls()
            if cfg.username:
                server.login(cfg.username, cfg.password or "")
            server.sendmail(cfg.sender, list(recipients), msg.as_string())

    async def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
        """Send the archive by mail."""
        if not request.recipients:
            logger.warning(f"No recipients for job {request.job_id}, mail not sent")
            return DeliveryOutcome.CANCELLED

        msg = self.build_message(request)
        try:
            await asyncio.to_thread(self._send, msg, request.recipients)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                f"Mail delivery failed: {e}",
                extra={"job_id": request.job_id, "smtp_host": self.mail_config.host},
            )
            return DeliveryOutcome.FAILED

        logger.info(
            "Mail delivered",
            extra={
                "job_id": request.job_id,
                "recipients": len(request.recipients),
                "size_bytes": len(request.archive),
            },
        )
        return DeliveryOutcome.DELIVERED
