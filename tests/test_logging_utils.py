"""Tests for logging setup."""

import io
import json
import logging

import pytest

from anchor_storage.logging_utils import (
    PACKAGE_LOGGER,
    JsonLineFormatter,
    LoggingConfig,
    StorageLoggerAdapter,
    configure_logging,
)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="anchor_storage.sync.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Push finished",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def package_logger():
    """Restore the package logger after a test configures it."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level = list(logger.handlers), logger.level
    yield logger
    logger.handlers = handlers
    logger.setLevel(level)


class TestJsonLineFormatter:
    def test_basic_fields(self):
        data = json.loads(JsonLineFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "anchor_storage.sync.engine"
        assert data["message"] == "Push finished"
        assert "ts" in data
        assert "pathname" not in data

    def test_context_keys_follow_message(self):
        line = JsonLineFormatter().format(make_record(pushed=3, table="exposures", user_id="u1"))

        assert list(json.loads(line))[4:] == ["user_id", "table", "pushed"]

    def test_unserializable_context_is_stringified(self):
        data = json.loads(JsonLineFormatter().format(make_record(table={"a"})))
        assert data["table"] == "{'a'}"


class TestLoggingConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ANCHOR_LOG_LEVEL", "debug")
        monkeypatch.setenv("ANCHOR_LOG_FORMAT", "plain")

        config = LoggingConfig.from_env()

        assert config.level == logging.DEBUG
        assert config.json_lines is False

    def test_unset_or_unknown_level_disables(self, monkeypatch):
        monkeypatch.delenv("ANCHOR_LOG_LEVEL", raising=False)
        assert LoggingConfig.from_env().level is None

        monkeypatch.setenv("ANCHOR_LOG_LEVEL", "chatty")
        assert LoggingConfig.from_env().level is None


class TestConfigureLogging:
    def test_disabled_leaves_logger_alone(self, package_logger):
        before = list(package_logger.handlers)
        assert configure_logging(LoggingConfig(level=None)) is None
        assert package_logger.handlers == before

    def test_json_output(self, package_logger):
        stream = io.StringIO()
        configure_logging(LoggingConfig(level=logging.INFO), stream=stream)

        logging.getLogger("anchor_storage.sync.engine").info(
            "Push finished", extra={"table": "exposures", "pushed": 2}
        )

        data = json.loads(stream.getvalue().splitlines()[-1])
        assert data["table"] == "exposures"
        assert data["pushed"] == 2

    def test_reconfigure_replaces_own_handler_only(self, package_logger):
        other = logging.NullHandler()
        package_logger.addHandler(other)

        configure_logging(LoggingConfig(level=logging.INFO), stream=io.StringIO())
        configure_logging(LoggingConfig(level=logging.WARNING, json_lines=False))

        assert other in package_logger.handlers
        assert len(package_logger.handlers) == 2
        assert package_logger.level == logging.WARNING


def test_adapter_merges_context(caplog):
    adapter = StorageLoggerAdapter(logging.getLogger("anchor_storage.test"), {"user_id": "u1"})

    with caplog.at_level(logging.INFO, logger="anchor_storage.test"):
        adapter.info("Starting sync", extra={"table": "exposures"})

    record = caplog.records[-1]
    assert record.user_id == "u1"
    assert record.table == "exposures"
