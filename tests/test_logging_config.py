"""Tests for log formatting."""

import json
import logging

from be.logging_config import JsonFormatter


def test_json_formatter_emits_one_object():
    record = logging.LogRecord("be.test", logging.INFO, __file__, 1, "imported %d songs", (3,), None)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "imported 3 songs"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "be.test"
