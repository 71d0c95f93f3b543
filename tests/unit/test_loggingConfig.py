"""
Unit tests for the log formatters.
"""

import json
import logging
import uuid

from sos_dispatch.core.logging_config import ConsoleFormatter, JSONFormatter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "sos_dispatch.test", logging.INFO, __file__, 1, "hello %s", ("world",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_includes_context_fields():
    request_id = uuid.UUID(int=1)
    payload = json.loads(JSONFormatter().format(_record(request_id=request_id)))

    assert payload["message"] == "hello world"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == str(request_id)
    assert "provider_id" not in payload


def test_console_shows_context():
    line = ConsoleFormatter().format(_record(provider_id="p1"))
    assert "[provider=p1]" in line
    assert line.endswith("hello world")
