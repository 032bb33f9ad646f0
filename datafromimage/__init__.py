"""
datafromimage - Credit-based image text extraction service.

Users buy credit packs through Stripe Checkout; a signed webhook credits
their account exactly once per checkout session. Each extraction request
spends one credit and runs a hosted vision model over the submitted images,
refunding the credit if the model fails.

Example:
    >>> from datafromimage import get_settings
    >>> settings = get_settings()
    >>> print(settings.billing.signup_credits)
"""

from datafromimage.config import get_settings

__all__ = ["get_settings"]
