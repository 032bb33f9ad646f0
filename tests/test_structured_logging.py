"""
Tests for structured logging: context propagation, service metadata and
redaction of secrets, emails and inline images.
"""

import asyncio
import contextvars

import pytest

from datafromimage.observability.logging import (
    OperationContext,
    RequestContext,
    ServiceMetadata,
    account_id_var,
    add_request_context,
    configure_logging,
    get_logger,
    redact_sensitive_fields,
    request_id_var,
    set_account_id,
    trace_id_var,
)


@pytest.mark.parametrize("json_output", [True, False])
def test_configure_logging(json_output):
    configure_logging(log_level="INFO", json_output=json_output, environment="test")

    logger = get_logger("test")
    logger.info("Credits debited", account_id="user-alice", credits=1)
    logger.warning("Slow request detected", latency_ms=6200.5)


class TestRequestContext:
    def test_values_visible_inside_and_reset_after(self):
        with RequestContext(account_id="user-alice", request_id="req_123"):
            assert request_id_var.get() == "req_123"
            assert account_id_var.get() == "user-alice"
            assert trace_id_var.get() is not None

        assert request_id_var.get() is None
        assert account_id_var.get() is None

    def test_ids_generated_when_missing(self):
        with RequestContext() as ctx:
            assert ctx.request_id.startswith("req_")
            assert trace_id_var.get().startswith("trace_")

    def test_nested(self):
        with RequestContext(account_id="user-alice", request_id="req1"):
            with RequestContext(account_id="user-bob", request_id="req2"):
                assert account_id_var.get() == "user-bob"

            assert account_id_var.get() == "user-alice"
            assert request_id_var.get() == "req1"

    def test_visible_in_async_code(self):
        async def read():
            return request_id_var.get(), account_id_var.get()

        with RequestContext(account_id="user-async", request_id="req_async"):
            assert asyncio.run(read()) == ("req_async", "user-async")


def test_set_account_id():
    def run():
        set_account_id("user-test")
        return account_id_var.get()

    # Isolated context so the value does not leak into other tests
    assert contextvars.copy_context().run(run) == "user-test"
    assert account_id_var.get() is None


def test_add_request_context_processor():
    with RequestContext(account_id="user-alice", request_id="req_1", trace_id="trace_1"):
        event = add_request_context(None, "info", {"event": "x"})

    assert event["request_id"] == "req_1"
    assert event["account_id"] == "user-alice"
    assert event["trace_id"] == "trace_1"


def test_explicit_fields_win_over_context():
    with RequestContext(account_id="user-alice"):
        event = add_request_context(None, "info", {"account_id": "user-bob"})

    assert event["account_id"] == "user-bob"


def test_service_metadata_processor():
    stamp = ServiceMetadata("datafromimage", "1.2.3", "production")

    event = stamp(None, "info", {"event": "x"})

    assert event["service"] == "datafromimage"
    assert event["version"] == "1.2.3"
    assert event["environment"] == "production"


def test_operation_context_reraises():
    configure_logging(log_level="INFO", json_output=False)

    with OperationContext("vision_extraction", images=2):
        pass

    with pytest.raises(ValueError):
        with OperationContext("vision_extraction", images=2):
            raise ValueError("Test error")


class TestRedaction:
    def test_long_secret_keeps_prefix_and_suffix(self):
        event = redact_sensitive_fields(None, "info", {"api_key": "sk_live_abcdefghijklmnop"})

        assert event["api_key"] == "sk_live_***nop"

    def test_short_secret_fully_redacted(self):
        event = redact_sensitive_fields(None, "info", {"token": "abc123"})

        assert event["token"] == "***REDACTED***"

    def test_stripe_signature_redacted(self):
        header = "t=1700000000,v1=5257a869e7ecebeda32affa62cdca3fa51cad7e77a0e56ff536d0ce8e108d8bd"

        event = redact_sensitive_fields(None, "info", {"stripe_signature": header})

        assert "5257a869e7ec" not in event["stripe_signature"]

    def test_email_reduced_to_domain(self):
        event = redact_sensitive_fields(None, "info", {"email": "alice@example.com"})

        assert event["email"] == "***@example.com"

    def test_inline_image_replaced_by_size(self):
        image = "data:image/png;base64," + "A" * 100

        event = redact_sensitive_fields(None, "info", {"image": image})

        assert event["image"] == f"<data url, {len(image)} chars>"

    def test_other_fields_untouched(self):
        event = redact_sensitive_fields(None, "info", {"credits": 100, "account_id": "user-alice"})

        assert event == {"credits": 100, "account_id": "user-alice"}


def test_exception_logging():
    configure_logging(log_level="INFO", json_output=False)

    logger = get_logger("test")
    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.error("Operation failed", exc_info=True)
