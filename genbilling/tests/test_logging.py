import json
import logging
import sys

import pytest

from genbilling.app.core.logging import JSONFormatter, resolve_level, setup_logging


def _record(**extra):
    record = logging.LogRecord("genbilling.test", logging.WARNING, __file__, 1, "job %s stalled", ("j-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_promotes_context_and_keeps_data():
    line = JSONFormatter().format(_record(job_id="j-1", data={"attempt": 2}))
    entry = json.loads(line)

    assert entry["message"] == "job j-1 stalled"
    assert entry["level"] == "WARNING"
    assert entry["job_id"] == "j-1"
    assert entry["data"] == {"attempt": 2}
    assert entry["timestamp"].endswith("+00:00")
    assert "account_id" not in entry


def test_formatter_includes_exception():
    try:
        raise ValueError("bad row")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    entry = json.loads(JSONFormatter().format(record))
    assert "ValueError: bad row" in entry["exception"]


@pytest.mark.parametrize("name, expected", [("debug", logging.DEBUG), (" ERROR ", logging.ERROR), ("loud", logging.INFO)])
def test_resolve_level(name, expected):
    assert resolve_level(name) == expected


def test_setup_logging_installs_single_json_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("DEBUG")
        setup_logging("DEBUG")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
