"""Service-level errors mapped to HTTP status codes by the API layer

All of them subclass ValueError so existing `except ValueError` handlers keep
treating them as client-visible failures.
"""


class ReconciliationError(ValueError):
    """Base class for errors surfaced to API callers"""
    status_code = 400


class NotFoundError(ReconciliationError):
    status_code = 404


class OwnershipError(ReconciliationError):
    """Checkout session or membership belongs to a different user"""
    status_code = 403


class ModeMismatchError(ReconciliationError):
    """Session mode disagrees with the requested or recorded action"""
    status_code = 409


class ProcessorError(ReconciliationError):
    """Generic failure talking to Stripe"""
    status_code = 502


class SessionNotFoundError(ProcessorError):
    """Stripe has no record of the requested object"""
    status_code = 502


class DuplicateRecordError(ReconciliationError):
    """A unique key collided with a row that is not the one we expected"""
    status_code = 500


class WebhookSignatureError(ReconciliationError):
    """Webhook payload could not be authenticated; never processed"""
    status_code = 400


class UnsupportedModeError(ReconciliationError):
    """Checkout session mode is neither payment nor subscription"""
    status_code = 400
