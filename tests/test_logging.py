"""
Tests for the structured logging setup.
"""
import io
import json
import logging
from typing import Any, Dict, Iterator, List

import pytest
import structlog

from problem2profit.monitoring.logging import setup_logging


@pytest.fixture
def log_stream() -> Iterator[io.StringIO]:
    """Route the root logger into a buffer, restoring the previous handlers afterwards."""
    root_logger = logging.getLogger()
    # pytest manages its own capture handlers per test phase
    saved_handlers = [
        h for h in root_logger.handlers if not type(h).__module__.startswith("_pytest")
    ]
    saved_level = root_logger.level
    stream = io.StringIO()

    setup_logging(stream=stream)
    yield stream

    for handler in root_logger.handlers[:]:
        if getattr(handler, "stream", None) is stream:
            root_logger.removeHandler(handler)
    for handler in saved_handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)


def read_lines(stream: io.StringIO) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestSetupLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_structlog_event_is_one_flat_json_object(self, log_stream: io.StringIO) -> None:
        structlog.get_logger("problem2profit.core.deals").info(
            "deal_created", deal_id="d1", amount=50
        )

        record = read_lines(log_stream)[-1]
        assert record["message"] == "deal_created"
        assert record["level"] == "INFO"
        assert record["logger"] == "problem2profit.core.deals"
        assert record["@timestamp"]
        assert record["deal_id"] == "d1"
        assert record["amount"] == 50
        assert record["app_env"] == "test"

    @pytest.mark.unit
    def test_bound_context_variables_are_included(self, log_stream: io.StringIO) -> None:
        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            structlog.get_logger("problem2profit.api").warning("slow_request")
        finally:
            structlog.contextvars.clear_contextvars()

        record = read_lines(log_stream)[-1]
        assert record["request_id"] == "req-1"
        assert record["level"] == "WARNING"

    @pytest.mark.unit
    def test_stdlib_records_share_the_format(self, log_stream: io.StringIO) -> None:
        logging.getLogger("asyncio").error("event loop is closed")

        record = read_lines(log_stream)[-1]
        assert record["message"] == "event loop is closed"
        assert record["level"] == "ERROR"
        assert record["logger"] == "asyncio"
