from __future__ import annotations

import json
import logging

import pytest

from kbingest.core.logging import JsonFormatter, configure_logging


@pytest.fixture
def clean_root():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def test_configure_logging_installs_one_handler(clean_root) -> None:
    configure_logging("debug")
    configure_logging("warning")

    named = [handler for handler in clean_root.handlers if handler.get_name() == "kbingest"]
    assert len(named) == 1
    assert clean_root.level == logging.WARNING


def test_json_formatter_emits_one_object_per_line() -> None:
    record = logging.LogRecord("kbingest.test", logging.INFO, __file__, 1, "dlq_purged=%s", (3,), None)

    line = JsonFormatter().format(record)

    payload = json.loads(line)
    assert payload["message"] == "dlq_purged=3"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "kbingest.test"
