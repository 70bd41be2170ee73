"""Tests for dcaspine.core.logging."""

import sys

import structlog

from dcaspine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
)


class TestLogContext:
    def teardown_method(self):
        clear_context()

    def test_binds_and_unbinds(self):
        with LogContext(plan_id="p-1", execution_number=3):
            assert structlog.contextvars.get_contextvars() == {
                "plan_id": "p-1",
                "execution_number": 3,
            }
        assert structlog.contextvars.get_contextvars() == {}

    def test_nested_keeps_outer(self):
        bind_context(instance_id="i-1")
        with LogContext(plan_id="p-1"):
            assert structlog.contextvars.get_contextvars()["instance_id"] == "i-1"
        assert structlog.contextvars.get_contextvars() == {"instance_id": "i-1"}


class TestConfigureLogging:
    def test_json_renderer_selected(self):
        configure_logging(level="INFO", json_format=True, service="dca-test")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer_selected(self):
        configure_logging(level="DEBUG", json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert get_logger("dcaspine.test") is not None

    def test_console_traceback_omits_frame_locals(self):
        configure_logging(level="INFO", json_format=False)
        renderer = structlog.get_config()["processors"][-1]
        api_key = "-".join(["sk", "live", "4242"])

        def call_price_api(key):
            raise RuntimeError("price API down")

        try:
            call_price_api(api_key)
        except RuntimeError:
            exc_info = sys.exc_info()

        output = renderer(None, "error", {"event": "tick_failed", "exc_info": exc_info})

        assert "RuntimeError: price API down" in output
        assert "sk-live-4242" not in output
