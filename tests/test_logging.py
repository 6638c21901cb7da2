"""Tests for the structured logging setup."""

import io
import json
import logging

import pytest

from linkhub.core.logging import LogContext, get_logger, setup_logging


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    setup_logging(level="DEBUG", json_logs=True, stream=stream)
    yield stream
    setup_logging()


def entries(stream: io.StringIO):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestLogging:

    def test_structlog_events_rendered_as_json(self, log_stream):
        with LogContext(connection_id="conn-1"):
            get_logger("linkhub.tests").info("Connection acknowledged", protocol="graphql-transport-ws")

        entry = entries(log_stream)[-1]
        assert entry["event"] == "Connection acknowledged"
        assert entry["level"] == "info"
        assert entry["logger"] == "linkhub.tests"
        assert entry["connection_id"] == "conn-1"
        assert entry["protocol"] == "graphql-transport-ws"
        assert "timestamp" in entry
        assert "_record" not in entry

    def test_context_unbound_on_exit(self, log_stream):
        with LogContext(operation_id="op-1"):
            pass
        get_logger("linkhub.tests").info("After operation")
        assert "operation_id" not in entries(log_stream)[-1]

    def test_stdlib_records_share_the_handler(self, log_stream):
        logging.getLogger("uvicorn.error").warning("Started server process")

        entry = entries(log_stream)[-1]
        assert entry["event"] == "Started server process"
        assert entry["level"] == "warning"
        assert entry["logger"] == "uvicorn.error"

    def test_chatty_loggers_quieted(self, log_stream):
        logging.getLogger("uvicorn.access").info('"POST /graphql HTTP/1.1" 200')
        logging.getLogger("asyncpg").info("connection checked out")
        assert entries(log_stream) == []
