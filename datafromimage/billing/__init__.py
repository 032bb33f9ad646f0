"""
Credit purchases and ledger reconciliation.

- pricing: the credit price table
- stripe_service: hosted checkout session creation
- webhooks: signed event verification and idempotent crediting
"""

from datafromimage.billing.pricing import PRICE_TABLE, PriceTier, get_price_tier
from datafromimage.billing.stripe_service import CheckoutService
from datafromimage.billing.webhooks import (
    CreditReconciler,
    StripeWebhookHandler,
    VerifiedEvent,
    WebhookVerifier,
)

__all__ = [
    "PRICE_TABLE",
    "PriceTier",
    "get_price_tier",
    "CheckoutService",
    "CreditReconciler",
    "StripeWebhookHandler",
    "VerifiedEvent",
    "WebhookVerifier",
]
