"""
Configuration management for the export server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class DeliveryBackend(Enum):
    """Supported delivery channels."""

    MEMORY = "memory"
    MAIL = "mail"
    S3 = "s3"
    LOCAL = "local"


@dataclass(frozen=True)
class StorageConfig:
    """Record store configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: SQLite file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/reimburse"
    db_name: str = "records.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/reimburse"),
            db_name=os.getenv("RECORDS_DB_NAME", "records.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ExportConfig:
    """Export pipeline configuration.

    Attributes:
        batch_archive_name: Archive name for "claim all unclaimed"
        batch_table_name: CSV entry name for batch exports
        single_table_name: CSV entry name for single-record exports
        currency_symbol: Prefix for amounts in text summaries
        legacy_zero_timestamps: Write zero ZIP date/time fields instead of 1980-01-01
        recipients: Default message recipients
        history_size: Finished jobs kept for status lookups
    """

    batch_archive_name: str = "reimbursements.zip"
    batch_table_name: str = "reimbursements.csv"
    single_table_name: str = "reimbursement.csv"
    currency_symbol: str = "₹"
    legacy_zero_timestamps: bool = False
    recipients: tuple[str, ...] = ()
    history_size: int = 100

    @classmethod
    def from_env(cls) -> ExportConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_archive_name=os.getenv("EXPORT_BATCH_ARCHIVE_NAME", "reimbursements.zip"),
            batch_table_name=os.getenv("EXPORT_BATCH_TABLE_NAME", "reimbursements.csv"),
            single_table_name=os.getenv("EXPORT_SINGLE_TABLE_NAME", "reimbursement.csv"),
            currency_symbol=os.getenv("EXPORT_CURRENCY_SYMBOL", "₹"),
            legacy_zero_timestamps=_env_bool("EXPORT_LEGACY_ZERO_TIMESTAMPS", "false"),
            recipients=_env_list("EXPORT_RECIPIENTS"),
            history_size=int(os.getenv("EXPORT_HISTORY_SIZE", "100")),
        )


@dataclass(frozen=True)
class MailConfig:
    """SMTP delivery configuration.

    Attributes:
        host: SMTP relay host
        port: SMTP relay port
        username: SMTP username (optional)
        password: SMTP password (optional)
        use_tls: Upgrade the connection with STARTTLS
        sender: From address
        timeout_seconds: Socket timeout
    """

    host: str = "localhost"
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    sender: str = "reimburse@localhost"
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> MailConfig:
        """Load configuration from environment variables."""
        username = os.getenv("SMTP_USER")
        return cls(
            host=os.getenv("SMTP_HOST", "localhost"),
            port=int(os.getenv("SMTP_PORT", "587")),
            username=username,
            password=os.getenv("SMTP_PASS"),
            use_tls=_env_bool("SMTP_USE_TLS", "true"),
            sender=os.getenv("SMTP_FROM", username or "reimburse@localhost"),
            timeout_seconds=float(os.getenv("SMTP_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 share configuration.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix for uploaded archives
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "reimburse-exports"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "exports"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "reimburse-exports"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", "exports"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class LocalShareConfig:
    """Local folder delivery configuration."""

    share_dir: str = "/var/lib/reimburse/exports"

    @classmethod
    def from_env(cls) -> LocalShareConfig:
        """Load configuration from environment variables."""
        return cls(share_dir=os.getenv("SHARE_DIR", "/var/lib/reimburse/exports"))


@dataclass(frozen=True)
class HttpConfig:
    """HTTP API configuration.

    Attributes:
        host: Bind host
        port: Bind port
        cors_origins: Allowed CORS origins
    """

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
            cors_origins=_env_list("HTTP_CORS_ORIGINS") or ("*",),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        delivery_backend: Which delivery channel to use
        storage: Record store configuration
        export: Export pipeline configuration
        mail: SMTP configuration (if delivery_backend is MAIL)
        s3: S3 configuration (if delivery_backend is S3)
        share: Local folder configuration (if delivery_backend is LOCAL)
        http: HTTP API configuration
        observability: Logging configuration
    """

    delivery_backend: DeliveryBackend = DeliveryBackend.MEMORY
    storage: StorageConfig = field(default_factory=StorageConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    s3: S3Config = field(default_factory=S3Config)
    share: LocalShareConfig = field(default_factory=LocalShareConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("DELIVERY_BACKEND", "memory").lower()
        try:
            delivery_backend = DeliveryBackend(backend_str)
        except ValueError:
            choices = ", ".join(b.value for b in DeliveryBackend)
            raise ValueError(f"Invalid DELIVERY_BACKEND '{backend_str}'. Must be one of: {choices}")

        config = cls(
            delivery_backend=delivery_backend,
            storage=StorageConfig.from_env(),
            export=ExportConfig.from_env(),
            mail=MailConfig.from_env(),
            s3=S3Config.from_env(),
            share=LocalShareConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.delivery_backend == DeliveryBackend.MAIL:
            if not self.mail.host:
                raise ValueError("SMTP_HOST is required when DELIVERY_BACKEND=mail")
            if not self.export.recipients:
                raise ValueError("EXPORT_RECIPIENTS is required when DELIVERY_BACKEND=mail")
        elif self.delivery_backend == DeliveryBackend.S3:
            if not self.s3.bucket:
                raise ValueError("S3_BUCKET is required when DELIVERY_BACKEND=s3")
        elif self.delivery_backend == DeliveryBackend.LOCAL:
            if not self.share.share_dir:
                raise ValueError("SHARE_DIR is required when DELIVERY_BACKEND=local")

        if self.export.history_size < 1:
            raise ValueError("EXPORT_HISTORY_SIZE must be at least 1")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "delivery_backend": self.delivery_backend.value,
                "data_dir": self.storage.data_dir,
                "http_bind": f"{self.http.host}:{self.http.port}",
                "smtp_host": self.mail.host
                if self.delivery_backend == DeliveryBackend.MAIL
                else None,
                "s3_bucket": self.s3.bucket if self.delivery_backend == DeliveryBackend.S3 else None,
                "share_dir": self.share.share_dir
                if self.delivery_backend == DeliveryBackend.LOCAL
                else None,
                "recipients": len(self.export.recipients),
                "legacy_zero_timestamps": self.export.legacy_zero_timestamps,
                "log_level": self.observability.log_level,
            },
        )
