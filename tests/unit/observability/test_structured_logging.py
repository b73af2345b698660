import json
import logging

import pytest

from ranksync.observability.logging import JsonFormatter, RequestContextFilter


def _record(**extra):
    record = logging.LogRecord("ranksync.test", logging.INFO, __file__, 1, "List %s saved", ("L1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_json_formatter_promotes_list_fields():
    record = _record(list_id="L1", user_id=7)
    RequestContextFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "List L1 saved"
    assert payload["level"] == "INFO"
    assert payload["list_id"] == "L1"
    assert payload["user_id"] == 7
    assert payload["request_id"] is None
    assert "socket_id" not in payload


@pytest.mark.unit
def test_request_filter_reads_request_headers(app):
    with app.test_request_context("/api/lists/L1", method="PATCH", headers={"X-Socket-ID": "sock-1"}):
        record = _record()
        RequestContextFilter().filter(record)

    assert record.path == "/api/lists/L1"
    assert record.method == "PATCH"
    assert record.origin_socket_id == "sock-1"
