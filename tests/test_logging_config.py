import json
import logging

from app.logging_config import build_formatter


def test_records_are_json_with_service_and_severity():
    record = logging.LogRecord(
        name="app.line_handler",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Reply failed for %s",
        args=("U1",),
        exc_info=None,
    )

    payload = json.loads(build_formatter("line-test").format(record))

    assert payload["message"] == "Reply failed for U1"
    assert payload["severity"] == "WARNING"
    assert payload["name"] == "app.line_handler"
    assert payload["service"] == "line-test"
    assert "levelname" not in payload
