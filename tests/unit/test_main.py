"""
Unit tests for server wiring.

Tests cover:
- Logging setup (JSON and text formats)
- Coordinator construction from configuration
"""

import logging
import tempfile

import json_log_formatter
import pytest

from reimburse.export_server.config import (
    ExportConfig,
    ObservabilityConfig,
    ServerConfig,
)
from reimburse.export_server.delivery import InMemoryDeliveryChannel
from reimburse.export_server.main import build_coordinator, setup_logging
from reimburse.export_server.store import RecordStore


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_json_format(self, restore_root_logger):
        config = ServerConfig(observability=ObservabilityConfig(log_level="debug", log_format="json"))
        setup_logging(config)

        root = restore_root_logger
        assert root.level == logging.DEBUG
        (handler,) = root.handlers
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self, restore_root_logger):
        config = ServerConfig(observability=ObservabilityConfig(log_format="text"))
        setup_logging(config)

        (handler,) = restore_root_logger.handlers
        assert not isinstance(handler.formatter, json_log_formatter.JSONFormatter)

    def test_unknown_level_defaults_to_info(self, restore_root_logger):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="chatty")))
        assert restore_root_logger.level == logging.INFO


class TestBuildCoordinator:
    """Tests for build_coordinator()."""

    def test_wires_export_settings(self):
        config = ServerConfig(
            export=ExportConfig(
                batch_archive_name="claims.zip",
                currency_symbol="€",
                legacy_zero_timestamps=True,
                recipients=("finance@example.com",),
                history_size=5,
            )
        )
        with tempfile.TemporaryDirectory() as tmpdir:
            store = RecordStore(tmpdir, wal_mode=False)
            channel = InMemoryDeliveryChannel()
            coordinator = build_coordinator(config, store, channel)

        assert coordinator.store is store
        assert coordinator.channel is channel
        assert coordinator.collector.batch_archive_name == "claims.zip"
        assert coordinator.collector.currency_symbol == "€"
        assert coordinator.legacy_zero_timestamps is True
        assert coordinator.recipients == ("finance@example.com",)
        assert coordinator.history_size == 5
