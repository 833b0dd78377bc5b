"""Tests for structured logging."""

import json
import logging
import sys
from unittest.mock import patch

from bulwark.app.core.config import Settings
from bulwark.app.core.context import get_current_request_id, set_current_request_id
from bulwark.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logging_config,
)


def make_log_record(msg: str = "hello", level: int = logging.WARNING, **attrs) -> logging.LogRecord:
    record = logging.LogRecord(
        name="bulwark.test",
        level=level,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for the JSON formatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_log_record("rejected")))

        assert data["level"] == "WARNING"
        assert data["logger"] == "bulwark.test"
        assert data["message"] == "rejected"
        assert data["source"]["line"] == 10
        assert "timestamp" in data

    def test_context_fields_promoted(self):
        record = make_log_record(request_id="abc", client_ip="10.0.0.1", reason_code="null_byte")

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "abc"
        assert data["client_ip"] == "10.0.0.1"
        assert data["reason_code"] == "null_byte"
        assert "extra" not in data

    def test_unknown_attributes_go_to_extra(self):
        data = json.loads(JSONFormatter().format(make_log_record(exception_type="RuntimeError")))
        assert data["extra"] == {"exception_type": "RuntimeError"}

    def test_exception_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_log_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert any("ValueError: bad" in line for line in data["exception"])


class TestContextFilter:
    """Tests for the context filter."""

    def test_fills_defaults(self):
        record = make_log_record()

        assert ContextFilter().filter(record) is True
        assert record.client_ip is None
        assert record.reason_code is None

    def test_request_id_from_context(self):
        set_current_request_id("ctx-id")
        try:
            record = make_log_record()
            ContextFilter().filter(record)
        finally:
            set_current_request_id(None)

        assert record.request_id == "ctx-id"
        assert get_current_request_id() is None

    def test_explicit_request_id_wins(self):
        set_current_request_id("ctx-id")
        try:
            record = make_log_record(request_id="explicit")
            ContextFilter().filter(record)
        finally:
            set_current_request_id(None)

        assert record.request_id == "explicit"


def test_get_log_context_drops_none():
    assert get_log_context(request_id="r", client_ip=None, status_code=400) == {
        "request_id": "r",
        "status_code": 400,
    }


def test_logging_config_formats():
    config = get_logging_config(Settings(_env_file=None, log_format="json"))
    assert config["handlers"]["console"]["formatter"] == "json"
    assert config["loggers"]["bulwark"]["propagate"] is False

    config = get_logging_config(
        Settings(_env_file=None, log_format="structured", log_level="debug")
    )
    assert config["handlers"]["console"]["formatter"] == "structured"
    assert config["loggers"]["bulwark"]["level"] == "DEBUG"


def test_unknown_format_falls_back_to_text():
    config = get_logging_config(Settings(_env_file=None, log_format="xml"))
    assert config["handlers"]["console"]["formatter"] == "text"


def test_create_app_configures_logging_from_its_settings():
    from bulwark.app.main import create_app

    settings = Settings(_env_file=None, log_format="json", log_level="DEBUG")

    with patch("bulwark.app.core.logging.logging.config.dictConfig") as dict_config:
        create_app(settings)

    config = dict_config.call_args.args[0]
    assert config["handlers"]["console"]["formatter"] == "json"
    assert config["loggers"]["bulwark"]["level"] == "DEBUG"
