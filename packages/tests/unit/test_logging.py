"""Unit tests for evselink._logging — JSON formatter and root logger setup.

Test Techniques Used:
    - Specification-based Testing: JsonFormatter output schema
    - State Inspection: root logger handlers and level after configure
    - Fixture Isolation: save/restore root logger state
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from evselink._logging import LIBRARY_LOGGERS, JsonFormatter, TextFormatter, configure_logging
from evselink._settings import LoggingSettings


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and all touched levels."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    library_levels = {name: logging.getLogger(name).level for name in LIBRARY_LOGGERS}
    yield
    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.handlers = original_handlers
    root.setLevel(original_level)
    for name, level in library_levels.items():
        logging.getLogger(name).setLevel(level)


def _record(message: str = "switched to poll", level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord(
        name="evselink._engine",
        level=level,
        pathname="engine.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestJsonFormatter:
    """Technique: Specification-based Testing."""

    def test_schema(self) -> None:
        line = JsonFormatter(service="evselink", version="1.2.3").format(_record())
        entry = json.loads(line)

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "evselink._engine"
        assert entry["message"] == "switched to poll"
        assert entry["service"] == "evselink"
        assert entry["version"] == "1.2.3"

    def test_timestamp_is_timezone_aware(self) -> None:
        entry = json.loads(JsonFormatter(service="s").format(_record()))
        assert datetime.fromisoformat(entry["timestamp"]).utcoffset() is not None

    def test_version_omitted_when_empty(self) -> None:
        entry = json.loads(JsonFormatter(service="s").format(_record()))
        assert "version" not in entry

    def test_single_line_with_exception(self) -> None:
        record = _record()
        try:
            raise ValueError("boom")
        except ValueError:
            record.exc_info = sys.exc_info()
        line = JsonFormatter(service="s").format(record)

        assert "\n" not in line
        assert "ValueError: boom" in json.loads(line)["exception"]

    def test_device_context_fields(self) -> None:
        record = _record()
        record.serial = "12345"
        record.state = "poll_active"
        entry = json.loads(JsonFormatter(service="s").format(record))

        assert entry["serial"] == "12345"
        assert entry["state"] == "poll_active"
        assert "transport" not in entry


class TestTextFormatter:
    """Technique: Specification-based Testing."""

    def test_serial_suffix(self) -> None:
        record = _record()
        record.serial = "12345"
        assert TextFormatter().format(record).endswith("switched to poll [12345]")

    def test_no_suffix_without_context(self) -> None:
        assert TextFormatter().format(_record()).endswith("evselink._engine: switched to poll")


@pytest.mark.usefixtures("_restore_root_logger")
class TestConfigureLogging:
    """Technique: State Inspection."""

    def test_json_format_installs_json_formatter(self) -> None:
        configure_logging(LoggingSettings(format="json"), service="evselink")
        assert isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)

    def test_text_format_installs_plain_formatter(self) -> None:
        configure_logging(LoggingSettings(format="text"), service="evselink")
        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, JsonFormatter)
        assert "%(levelname)s" in formatter._fmt  # type: ignore[union-attr, operator]

    def test_sets_level(self) -> None:
        configure_logging(LoggingSettings(level="DEBUG"), service="evselink")
        assert logging.getLogger().level == logging.DEBUG

    def test_replaces_existing_handlers(self) -> None:
        stale = logging.NullHandler()
        logging.getLogger().addHandler(stale)
        configure_logging(LoggingSettings(), service="evselink")
        assert stale not in logging.getLogger().handlers

    def test_rotating_file_handler(self, tmp_path: Path) -> None:
        settings = LoggingSettings(file=str(tmp_path / "evselink.log"), max_file_size_mb=2, backup_count=5)
        configure_logging(settings, service="evselink")

        rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 2 * 1024 * 1024
        assert rotating[0].backupCount == 5

    def test_no_file_handler_by_default(self) -> None:
        configure_logging(LoggingSettings(), service="evselink")
        assert not any(isinstance(h, RotatingFileHandler) for h in logging.getLogger().handlers)

    def test_clamps_library_loggers(self) -> None:
        configure_logging(LoggingSettings(level="DEBUG", library_level="ERROR"), service="evselink")
        for name in LIBRARY_LOGGERS:
            assert logging.getLogger(name).level == logging.ERROR
