"""
Error taxonomy for payment reconciliation and credit-gated extraction.

Every error carries a stable HTTP status code and a machine-readable code so
handlers can render a structured body without inspecting exception types.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for credit and payment errors."""

    status_code: int = 500
    error_code: str = "billing_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class SignatureInvalid(BillingError):
    """Webhook payload failed signature verification. Never retried."""

    status_code = 400
    error_code = "signature_invalid"


class AccountNotFound(BillingError):
    """No account matches the correlator carried by a payment event."""

    status_code = 404
    error_code = "account_not_found"


class UnmappedPayment(BillingError):
    """Neither event metadata nor the price table yield a credit amount."""

    status_code = 422
    error_code = "unmapped_payment"


class DuplicateEvent(BillingError):
    """The payment was already recorded. Callers treat this as success."""

    status_code = 200
    error_code = "duplicate_event"


class InsufficientCredits(BillingError):
    """Account balance cannot cover the request. Nothing was debited."""

    status_code = 402
    error_code = "insufficient_credits"


class InferenceFailure(BillingError):
    """The vision model failed after a debit; the debit has been restored."""

    status_code = 502
    error_code = "inference_failure"


class PersistenceFailure(BillingError):
    """A datastore write failed. Safe to redeliver."""

    status_code = 503
    error_code = "persistence_failure"


class UnknownPriceTier(BillingError):
    """Requested price tier is not in the price table."""

    status_code = 400
    error_code = "unknown_price_tier"


class CheckoutError(BillingError):
    """The payment processor could not create a checkout session."""

    status_code = 500
    error_code = "checkout_error"
