"""Secret redaction in log records"""
import logging
import sys

import pytest

from app.core.logging import RedactSecretsFilter


def _record(msg, *args):
    return logging.LogRecord("app", logging.INFO, __file__, 1, msg, args, None)


@pytest.mark.medium
class TestRedactSecretsFilter:

    def test_masks_stripe_keys_and_webhook_secrets(self):
        record = _record("using %s and %s", "sk_test_51Habc", "whsec_xyz789")

        assert RedactSecretsFilter().filter(record) is True
        assert record.getMessage() == "using [REDACTED] and [REDACTED]"

    def test_masks_claim_link_token(self):
        record = _record("sent https://app.test/claim-account?token=AbC-123_x to guest")

        RedactSecretsFilter().filter(record)

        assert record.getMessage() == "sent https://app.test/claim-account?token=[REDACTED] to guest"

    def test_leaves_plain_messages_alone(self):
        record = _record("order %s paid", 42)

        RedactSecretsFilter().filter(record)

        assert record.args == (42,)
        assert record.getMessage() == "order 42 paid"

    def test_masks_secrets_in_tracebacks(self):
        try:
            raise RuntimeError("Invalid API key provided: sk_live_51Hsecret")
        except RuntimeError:
            record = logging.LogRecord("app", logging.ERROR, __file__, 1, "stripe call failed", (), sys.exc_info())

        RedactSecretsFilter().filter(record)
        rendered = logging.Formatter().format(record)

        assert "sk_live_51Hsecret" not in rendered
        assert "RuntimeError: Invalid API key provided: [REDACTED]" in rendered
