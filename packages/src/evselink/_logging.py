"""Log formatting and root-logger configuration.

``configure_logging`` picks one of two formats from
:class:`~evselink._settings.LoggingSettings`:

- ``text``: terminal lines, suffixed with ``[serial]`` when a record
  carries device context.
- ``json``: NDJSON tagged with ``service`` and ``version``.

Device context travels as logging ``extra`` (``serial``, ``state``,
``transport``) so transport switches of several controllers can be told
apart in one stream.  The chatty network libraries are clamped to
``library_level``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from evselink._settings import LoggingSettings

_MB = 1024 * 1024

CONTEXT_FIELDS = ("serial", "state", "transport")
LIBRARY_LOGGERS = ("aiomqtt", "aiohttp", "zeroconf")


def _context(record: logging.LogRecord) -> dict[str, str]:
    return {
        key: str(value)
        for key in CONTEXT_FIELDS
        if (value := getattr(record, key, None)) is not None
    }


class TextFormatter(logging.Formatter):
    """``asctime [LEVEL] logger: message`` plus an optional ``[serial]`` tag."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        serial = getattr(record, "serial", None)
        return f"{line} [{serial}]" if serial else line


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``message``, ``service``; then ``version`` when set, any device
    context fields, and ``exception`` for records with a traceback.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }
        if self._version:
            entry["version"] = self._version
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Replace the root handlers according to *settings*.

    Always logs to ``stderr``; adds a rotating file handler when
    ``settings.file`` is set.
    """
    formatter: logging.Formatter
    if settings.format == "json":
        formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = TextFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        handlers.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=settings.max_file_size_mb * _MB,
                backupCount=settings.backup_count,
            ),
        )

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(settings.level)

    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(settings.library_level)
