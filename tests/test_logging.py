"""Tests for toolgate structured logging."""

import json
import logging
import sys

import pytest

from toolgate.logging import ToolgateFormatter, configure_logging, get_logger


def _record(name="toolgate.tools", level=logging.INFO, msg="Tool call finished", **extra):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="tools.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_logging():
    yield
    configure_logging(level="WARNING", json_output=False)


class TestToolgateFormatter:
    def test_human_line(self):
        output = ToolgateFormatter().format(_record())
        assert "toolgate.tools" in output
        assert "INFO" in output
        assert output.endswith("Tool call finished")

    def test_context_fields_appended(self):
        output = ToolgateFormatter().format(_record(tool_name="bash", call_id="tc-1", status="ok"))
        assert "| tool_name=bash call_id=tc-1 status=ok" in output

    def test_unknown_extra_is_ignored(self):
        output = ToolgateFormatter().format(_record(user_id="u-1"))
        assert "user_id" not in output

    def test_json_output(self):
        record = _record(name="toolgate.safety.commands", level=logging.WARNING, msg="Command blocked",
                         reason="git push --force", exit_code=0)
        data = json.loads(ToolgateFormatter(json_output=True).format(record))
        assert data["logger"] == "toolgate.safety.commands"
        assert data["level"] == "WARNING"
        assert data["message"] == "Command blocked"
        assert data["reason"] == "git push --force"
        assert data["exit_code"] == 0
        assert "timestamp" in data

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record(level=logging.ERROR, msg="Tool crashed")
            record.exc_info = sys.exc_info()
        data = json.loads(ToolgateFormatter(json_output=True).format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestGetLogger:
    def test_named(self):
        assert get_logger("toolgate.tools.dynamic").name == "toolgate.tools.dynamic"

    def test_default_name(self):
        assert get_logger().name == "toolgate"


class TestConfigureLogging:
    def test_levels(self, restore_logging):
        configure_logging(level="DEBUG")
        assert get_logger().level == logging.DEBUG
        configure_logging(level="error")
        assert get_logger().level == logging.ERROR

    def test_unknown_level_falls_back_to_warning(self, restore_logging):
        configure_logging(level="CHATTY")
        assert get_logger().level == logging.WARNING

    def test_environment_level(self, restore_logging, monkeypatch):
        monkeypatch.setenv("TOOLGATE_LOG_LEVEL", "INFO")
        configure_logging()
        assert get_logger().level == logging.INFO

    def test_single_json_handler(self, restore_logging):
        configure_logging(json_output=True)
        configure_logging(json_output=True)
        logger = get_logger()
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, ToolgateFormatter)
        assert logger.handlers[0].formatter._json_output is True
        assert logger.propagate is False
