"""
Credit purchase endpoints.

- POST /api/create-checkout-session: start a hosted checkout for a price tier
- POST /api/stripe-webhook: signed payment events from Stripe
- GET  /api/credits: balance, price tiers and recent purchases
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from datafromimage.auth.dependencies import get_current_account
from datafromimage.billing.pricing import get_price_tier, list_price_tiers
from datafromimage.errors import BillingError, CheckoutError
from datafromimage.models.account import Account
from datafromimage.rate_limits import checkout_rate_limit, limiter, rate_limiting_disabled
from datafromimage.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Billing"])


class CheckoutSessionRequest(BaseModel):
    """Checkout request. The legacy userId/priceId field names are accepted."""

    model_config = ConfigDict(populate_by_name=True)

    account_id: str | None = Field(
        default=None, validation_alias=AliasChoices("accountId", "userId", "account_id")
    )
    price_tier: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("priceTier", "priceId", "price_tier")
    )


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


@router.post("/create-checkout-session")
@limiter.limit(checkout_rate_limit, exempt_when=rate_limiting_disabled)
async def create_checkout_session(
    request: Request,  # Required by slowapi
    body: CheckoutSessionRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """
    Create a Stripe Checkout session for one credit pack.

    Raises:
        HTTPException 403: accountId names a different account
        UnknownPriceTier (400): priceTier not in the price table
        HTTPException 503: Stripe not configured
    """
    if body.account_id is not None and body.account_id != account.account_id:
        logger.warning(
            "Checkout requested for another account",
            extra={"account_id": account.account_id, "requested_account_id": body.account_id},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot create a checkout session for another account",
        )

    tier = get_price_tier(body.price_tier)

    if not services.checkout.is_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are not configured",
        )

    try:
        session_id = await services.checkout.create_checkout_session(account, tier.key)
    except CheckoutError:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Error creating checkout session"},
        )

    return {"sessionId": session_id}


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    services: Services = Depends(get_services),
):
    """
    Receive a Stripe event.

    The raw body is read unparsed; signature verification needs the exact bytes.
    2xx acknowledges the delivery. Any other status makes Stripe redeliver,
    which is safe because crediting is keyed by checkout session id.
    """
    payload = await request.body()

    try:
        result = await services.webhook_handler.handle_event(payload, stripe_signature)
    except BillingError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"status": "failed", "error": e.message, "timestamp": _utc_timestamp()},
        )

    return {"status": result.status, "eventType": result.event_type, "timestamp": _utc_timestamp()}


@router.get("/credits")
async def get_credits(
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Current balance, purchasable packs and the most recent purchases."""
    credits = await services.database.get_credits(account.account_id)
    transactions = await services.database.list_transactions(
        account.account_id, limit=services.settings.billing.recent_transactions_limit
    )

    return {
        "credits": credits if credits is not None else 0,
        "priceTiers": [
            {
                "priceTier": tier.key,
                "credits": tier.credits,
                "amountCents": tier.amount_cents,
                "label": tier.label,
                "amountDisplay": tier.amount_display,
            }
            for tier in list_price_tiers()
        ],
        "recentTransactions": [
            {
                "transactionId": t.transaction_id,
                "credits": t.credits,
                "amountCents": t.amount_cents,
                "createdAt": t.created_at.isoformat(),
            }
            for t in transactions
        ],
    }
