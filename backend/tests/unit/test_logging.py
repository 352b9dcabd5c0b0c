"""Unit tests for structured logging helpers."""

import logging

import pytest

from orgpay.utils.logging import (
    CorrelationIdFilter,
    clear_correlation_id,
    get_correlation_id,
    log_payment_operation,
    log_security_event,
    mask_email,
    set_correlation_id,
)

logger = logging.getLogger("orgpay.tests")


class TestMaskEmail:
    @pytest.mark.parametrize(
        "email,expected",
        [
            ("jane.doe@example.org", "j***@example.org"),
            ("not-an-email", "***"),
            (None, None),
            ("", ""),
        ],
    )
    def test_mask(self, email, expected):
        assert mask_email(email) == expected


class TestCorrelationId:
    def test_set_get_clear(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"

        clear_correlation_id()

        assert get_correlation_id() is None

    def test_generated_when_missing(self):
        cid = set_correlation_id()
        try:
            assert cid
            assert get_correlation_id() == cid
        finally:
            clear_correlation_id()

    def test_filter_adds_id_to_records(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        CorrelationIdFilter().filter(record)

        assert record.correlation_id == "no-correlation-id"


class TestStructuredHelpers:
    def test_payment_operation_context(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="orgpay.tests"):
            log_payment_operation(
                logger, "start_donation", attempt_id="pa_1", amount_cents=5000
            )

        record = caplog.records[-1]
        assert record.levelno == logging.INFO
        assert record.attempt_id == "pa_1"
        assert "amount_cents=5000" in record.getMessage()

    def test_payment_operation_error_level(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="orgpay.tests"):
            log_payment_operation(logger, "create_checkout_session", error="timeout")

        assert caplog.records[-1].levelno == logging.ERROR

    def test_security_event_always_error(self, caplog: pytest.LogCaptureFixture):
        with caplog.at_level(logging.INFO, logger="orgpay.tests"):
            log_security_event(
                logger,
                "connected_account_mismatch",
                event_id="evt_1",
                organization_id="org-river",
                expected_account="acct_river",
                actual_account="acct_forest",
            )

        record = caplog.records[-1]
        assert record.levelno == logging.ERROR
        assert record.getMessage().startswith("SECURITY: connected_account_mismatch")
        assert record.actual_account == "acct_forest"
