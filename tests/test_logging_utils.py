"""
Tests for structured logging utilities module.
"""

import json
import logging
import uuid

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    log_external_call,
    mask_email,
    request_id_var,
    set_request_id,
    set_stripe_event,
    stripe_event_var,
)


def _record(msg="Test message", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        parsed = json.loads(StructuredFormatter().format(_record("Warning message", logging.WARNING)))

        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert parsed["message"] == "Warning message"
        assert "timestamp" in parsed

    def test_format_includes_request_id_from_context(self):
        token = request_id_var.set("req-12345")
        try:
            parsed = json.loads(StructuredFormatter().format(_record()))
        finally:
            request_id_var.reset(token)

        assert parsed["request_id"] == "req-12345"

    def test_format_includes_stripe_event_context(self):
        token = stripe_event_var.set({})
        try:
            set_stripe_event("evt_1", "invoice.paid", "cus_123")
            parsed = json.loads(StructuredFormatter().format(_record()))
        finally:
            stripe_event_var.reset(token)

        assert parsed["stripe_event_id"] == "evt_1"
        assert parsed["stripe_event_type"] == "invoice.paid"
        assert parsed["stripe_customer_id"] == "cus_123"

    def test_format_includes_extra_fields(self):
        parsed = json.loads(StructuredFormatter().format(_record(insecure_mode=True, service="stripe")))

        assert parsed["insecure_mode"] is True
        assert parsed["service"] == "stripe"
        assert "lineno" not in parsed

    def test_format_handles_non_serializable_extra(self):
        parsed = json.loads(StructuredFormatter().format(_record(payload=object())))

        assert parsed["payload"].startswith("<object object")


class TestConfigureStructuredLogging:
    def test_replaces_handlers_with_structured_one(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())

        logger = configure_structured_logging()

        assert logger is root
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert root.level == logging.INFO


class TestSetRequestId:
    def test_extracts_api_gateway_request_id(self):
        assert set_request_id({"requestContext": {"requestId": "apigw-1"}}) == "apigw-1"
        assert request_id_var.get() == "apigw-1"

    def test_extracts_x_request_id_header(self):
        assert set_request_id({"headers": {"X-Request-Id": "hdr-1"}}) == "hdr-1"

    def test_generates_uuid_when_no_id_found(self):
        request_id = set_request_id({"headers": None})

        uuid.UUID(request_id)

    def test_clears_previous_stripe_event(self):
        set_stripe_event("evt_old", "invoice.paid")

        set_request_id({"requestContext": {"requestId": "apigw-2"}})

        assert stripe_event_var.get() == {}
        assert "stripe_event_id" not in json.loads(StructuredFormatter().format(_record()))


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("alice@example.com") == "ali***@example.com"

    def test_none(self):
        assert mask_email(None) == "<none>"

    def test_without_domain(self):
        assert mask_email("alice") == "ali***"


class TestLogExternalCall:
    def test_successful_call_logged_at_info(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.INFO):
            log_external_call(logger, "stripe", "Subscription.cancel", True, 120.0)

        assert caplog.records[0].levelno == logging.INFO
        assert caplog.records[0].message == "External call to stripe: Subscription.cancel -> success"

    def test_failed_call_logged_at_warning(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.WARNING):
            log_external_call(logger, "stripe", "Subscription.create", False, 900.0, "card_declined")

        record = caplog.records[0]
        assert record.levelno == logging.WARNING
        assert record.error == "card_declined"
        assert record.service == "stripe"
