"""
Tests for structured JSON logging.
"""
import io
import json
import logging
import sys

from ai_orchestrator.logger import ROOT_LOGGER_NAME, JsonFormatter, configure_logging, get_logger


class TestJsonFormatter:
    def test_extra_fields_included(self):
        record = logging.LogRecord(ROOT_LOGGER_NAME, logging.INFO, __file__, 1, "llm.complete", None, None)
        record.event = "llm.complete.start"
        record.model = "gpt-4o"
        record.payload = object()

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "llm.complete"
        assert data["level"] == "INFO"
        assert data["event"] == "llm.complete.start"
        assert data["model"] == "gpt-4o"
        assert isinstance(data["payload"], str)

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(ROOT_LOGGER_NAME, logging.ERROR, __file__, 1, "failed", None, sys.exc_info())

        data = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestConfigureLogging:
    def teardown_method(self):
        root = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in list(root.handlers):
            if getattr(handler, "_ai_orchestrator", False):
                root.removeHandler(handler)

    def test_handler_installed_once(self):
        stream = io.StringIO()
        configure_logging(logging.INFO, stream)
        configure_logging(logging.INFO, stream)

        root = logging.getLogger(ROOT_LOGGER_NAME)
        assert sum(1 for h in root.handlers if getattr(h, "_ai_orchestrator", False)) == 1

        get_logger("core.pipeline").info("turn.start", extra={"event": "turn.start"})
        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["logger"] == "ai_orchestrator.core.pipeline"
        assert line["event"] == "turn.start"

    def test_package_names_not_prefixed_twice(self):
        assert get_logger("ai_orchestrator.sdk.search_client").name == "ai_orchestrator.sdk.search_client"
