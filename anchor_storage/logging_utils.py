"""
Logging setup for the storage core.

Sync runs in the background and never raises into the UI, so its log lines
are the only record of what happened. ``configure_logging`` attaches one
handler to the ``anchor_storage`` logger, emitting either single-line JSON
(for log shippers, indexed by user and table) or plain text.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TextIO

PACKAGE_LOGGER = "anchor_storage"

# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Context keys written right after the message, when present.
_CONTEXT_FIRST = ("user_id", "table", "id")

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class LoggingConfig:
    """How the package logger is set up. ``level=None`` leaves logging alone."""

    level: int | None = None
    json_lines: bool = True

    @classmethod
    def from_env(cls) -> LoggingConfig:
        """Create config from environment variables."""
        level_name = os.environ.get("ANCHOR_LOG_LEVEL")
        level = logging.getLevelName(level_name.upper()) if level_name else None
        if not isinstance(level, int):
            level = None
        fmt = os.environ.get("ANCHOR_LOG_FORMAT", "json").lower()
        return cls(level=level, json_lines=fmt != "plain")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, message, then context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {
            k: v
            for k, v in vars(record).items()
            if k not in _RECORD_ATTRS and not k.startswith("_")
        }
        for key in _CONTEXT_FIRST:
            if key in context:
                entry[key] = context.pop(key)
        entry.update(context)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class _PackageHandler(logging.StreamHandler):
    """Marker type so reconfiguring replaces only what we installed."""


def configure_logging(
    config: LoggingConfig | None = None,
    stream: TextIO | None = None,
) -> logging.Logger | None:
    """Attach the package handler according to ``config``.

    Safe to call repeatedly; a previously installed package handler is
    replaced, other handlers are left untouched.

    Args:
        config: Logging config (read from the environment if None)
        stream: Output stream (stdout if None)

    Returns:
        The configured package logger, or None when config.level is None
    """
    config = config or LoggingConfig.from_env()
    if config.level is None:
        return None

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in [h for h in logger.handlers if isinstance(h, _PackageHandler)]:
        logger.removeHandler(handler)

    handler = _PackageHandler(stream or sys.stdout)
    handler.setFormatter(
        JsonLineFormatter() if config.json_lines else logging.Formatter(PLAIN_FORMAT)
    )
    logger.addHandler(handler)
    logger.setLevel(config.level)
    return logger


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds storage context to all log messages.

    The sync engine wraps its logger with the signed-in user_id so every
    push/pull line can be attributed.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Add extra context to log record."""
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs
