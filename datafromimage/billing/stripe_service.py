"""
Stripe Checkout session creation for credit pack purchases.

The session embeds everything the webhook needs to credit the buyer:
- metadata.account_id and client_reference_id: the internal account id
- metadata.credits: the tier's credit grant, as a decimal string
- metadata.price_tier: the tier key, for reporting

Credits are never granted here. A created session is only a promise; the
ledger changes when the signed completion event arrives.
"""

import logging
from typing import Any

import stripe

from datafromimage.billing.pricing import PriceTier, get_price_tier
from datafromimage.config import BillingConfig, StripeConfig
from datafromimage.errors import CheckoutError
from datafromimage.models.account import Account
from datafromimage.observability.metrics import track_checkout_session
from datafromimage.resilience.circuit_breakers import StripeCircuitBreakerError, call_stripe

logger = logging.getLogger(__name__)


class CheckoutService:
    """Creates hosted checkout sessions for the tiers in the price table."""

    def __init__(
        self,
        config: StripeConfig,
        billing_config: BillingConfig,
        client: stripe.StripeClient | None = None,
    ):
        """
        Initialize checkout service.

        Args:
            config: Stripe configuration
            billing_config: Public URL used for redirects
            client: Preconfigured Stripe client (built from config when omitted)
        """
        self.config = config
        self.billing_config = billing_config

        if client is not None:
            self.client = client
        elif config.secret_key:
            self.client = stripe.StripeClient(
                config.secret_key,
                http_client=stripe.HTTPXClient(timeout=config.request_timeout_seconds),
                max_network_retries=0,
            )
        else:
            self.client = None
            logger.warning("Stripe secret key not configured - checkout disabled")

    @property
    def is_enabled(self) -> bool:
        return self.client is not None

    def build_session_params(self, account: Account, tier: PriceTier) -> dict[str, Any]:
        """Checkout session parameters for one pack of `tier` bought by `account`."""
        public_url = self.billing_config.public_url
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.config.currency,
                        "product_data": {
                            "name": tier.label,
                            "description": f"{tier.credits} image extraction credits",
                        },
                        "unit_amount": tier.amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{public_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{public_url}/",
            "client_reference_id": account.account_id,
            "metadata": {
                "account_id": account.account_id,
                "credits": str(tier.credits),
                "price_tier": tier.key,
            },
        }
        if account.email:
            params["customer_email"] = account.email
        return params

    async def create_checkout_session(self, account: Account, price_tier: str) -> str:
        """
        Create a hosted checkout session for a credit pack.

        Args:
            account: Authenticated buyer
            price_tier: Key into the price table

        Returns:
            Checkout session id (cs_...)

        Raises:
            UnknownPriceTier: If price_tier is not in the price table
            CheckoutError: If Stripe is unconfigured or rejects the request
        """
        tier = get_price_tier(price_tier)

        if not self.is_enabled:
            track_checkout_session(tier.key, success=False)
            raise CheckoutError("Stripe not configured", price_tier=tier.key)

        params = self.build_session_params(account, tier)

        try:
            session = await call_stripe(
                self.client.checkout.sessions.create_async, params=params
            )

        except (stripe.StripeError, StripeCircuitBreakerError) as e:
            track_checkout_session(tier.key, success=False)
            logger.error(
                "Failed to create checkout session",
                extra={
                    "account_id": account.account_id,
                    "price_tier": tier.key,
                    "error": str(e),
                },
            )
            raise CheckoutError(
                f"Failed to create checkout session: {e}",
                account_id=account.account_id,
                price_tier=tier.key,
            ) from e

        track_checkout_session(tier.key, success=True)
        logger.info(
            "Created checkout session",
            extra={
                "account_id": account.account_id,
                "price_tier": tier.key,
                "credits": tier.credits,
                "checkout_session_id": session.id,
            },
        )
        return session.id
