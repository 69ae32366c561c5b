from __future__ import annotations

import json
import logging

from freshness.utils.logging import JsonFormatter, KeyValueFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("freshness.pipeline", logging.INFO, __file__, 1, "probe.failure", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields_only():
    payload = json.loads(JsonFormatter().format(_record(candidate_id=3, status="unreachable")))

    assert payload["event"] == "probe.failure"
    assert payload["level"] == "INFO"
    assert payload["candidate_id"] == 3
    assert payload["status"] == "unreachable"
    assert "pathname" not in payload
    assert "lineno" not in payload


def test_key_value_formatter_appends_extras():
    line = KeyValueFormatter().format(_record(candidate_id=3))

    assert "probe.failure" in line
    assert line.endswith("candidate_id=3")


def test_configure_logging_replaces_handlers():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug", json_enabled=True)
        configure_logging("warning", json_enabled=False)

        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, KeyValueFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("httpx").setLevel(logging.NOTSET)
