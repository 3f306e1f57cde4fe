"""Logging configuration for the application"""
import logging
import re

from app.core.config import settings

# Stripe keys, webhook secrets and claim links must never reach the log sink
_SECRET_PATTERNS = (
    re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"(claim-account\?token=)[A-Za-z0-9_\-]+"),
)


def _redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        if pattern.groups == 1:
            text = pattern.sub(r"\1[REDACTED]", text)
        else:
            text = pattern.sub("[REDACTED]", text)
    return text


class RedactSecretsFilter(logging.Filter):
    """Mask credentials in the rendered message and any attached traceback"""

    _formatter = logging.Formatter()

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None

        # Formatters reuse exc_text, so rendering it here covers every handler
        if record.exc_info and not record.exc_text:
            record.exc_text = self._formatter.formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = _redact(record.exc_text)
        return True


def setup_logging():
    """Configure root logging for the API and workers"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.addFilter(RedactSecretsFilter())
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[handler],
        force=True
    )

    # Stripe logs request bodies at INFO
    for noisy in ("stripe", "urllib3", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
