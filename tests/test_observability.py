from __future__ import annotations

import io
import json
import logging
from typing import Iterator

import pytest

from presence.observability import JsonFormatter, bind, configure_logging
from tests.support import context


@pytest.fixture
def stream() -> Iterator[io.StringIO]:
    buffer = io.StringIO()
    handler = configure_logging("debug", stream=buffer)
    yield buffer
    logging.getLogger("presence").removeHandler(handler)


def _records(buffer: io.StringIO) -> list[dict[str, object]]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


def test_bound_logger_stamps_context(stream: io.StringIO) -> None:
    log = bind(logging.getLogger("presence.services"), context("t1"), "create_status", status_name="Busy")

    log.info("status created", extra={"status_id": "s1"})

    [record] = _records(stream)
    assert record["event"] == "status created"
    assert record["level"] == "info"
    assert record["logger"] == "presence.services"
    assert record["tenant_id"] == "t1"
    assert record["correlation_id"] == "corr-1"
    assert record["operation"] == "create_status"
    assert record["status_name"] == "Busy"
    assert record["status_id"] == "s1"


def test_formatter_renders_exceptions_and_skips_none(stream: io.StringIO) -> None:
    log = bind(logging.getLogger("presence.provisioning"), context(), "provision", stage=None)

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        log.error("stage failed", exc_info=True, extra={"detail": ("a", "b")})

    [record] = _records(stream)
    assert "stage" not in record
    assert record["detail"] == "('a', 'b')"
    assert "RuntimeError: boom" in record["exc_info"]


def test_configure_logging_replaces_previous_json_handler() -> None:
    first = configure_logging("INFO", stream=io.StringIO())
    second = configure_logging(logging.WARNING, stream=io.StringIO())
    logger = logging.getLogger("presence")
    try:
        assert first not in logger.handlers
        assert second in logger.handlers
        assert logger.level == logging.WARNING
    finally:
        logger.removeHandler(second)


def test_formatter_is_usable_standalone() -> None:
    record = logging.LogRecord("presence", logging.WARNING, __file__, 1, "hello %s", ("world",), None)

    assert json.loads(JsonFormatter().format(record)) == {
        "level": "warning",
        "logger": "presence",
        "event": "hello world",
    }
