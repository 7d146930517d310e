"""Tests for kitadoc.logging_setup."""

import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from kitadoc.logging_setup import configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    root.handlers = saved_handlers
    root.setLevel(saved_level)


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_json_output(self, restore_logging, capsys):
        configure_logging("info", "json")

        logging.getLogger("kitadoc.test").info("Process process_id=%s status=%s", 1, "starting")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["message"] == "Process process_id=1 status=starting"
        assert record["levelname"] == "INFO"
        assert record["name"] == "kitadoc.test"

    def test_text_output(self, restore_logging, capsys):
        configure_logging("debug", "text")

        logging.getLogger("kitadoc.test").debug("hello")

        assert "[DEBUG] kitadoc.test: hello" in capsys.readouterr().out
        assert logging.getLogger().level == logging.DEBUG

    def test_reconfigure_replaces_own_handler(self, restore_logging):
        configure_logging("info", "json")
        configure_logging("warning", "text")

        own = [h for h in logging.getLogger().handlers if getattr(h, "_kitadoc_handler", False)]
        assert len(own) == 1
        assert not isinstance(own[0].formatter, JsonFormatter)

    def test_invalid_format(self, restore_logging):
        with pytest.raises(ValueError, match="Unsupported log format"):
            configure_logging("info", "xml")

    def test_invalid_level(self, restore_logging):
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging("loud", "json")
