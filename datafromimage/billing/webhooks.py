"""
Stripe webhook verification and credit reconciliation.

Pipeline for one delivery:
1. WebhookVerifier checks the Stripe-Signature header against the raw body
   and produces a VerifiedEvent. Nothing else can construct one.
2. CreditReconciler maps a verified checkout event to (account, credits) and
   applies it to the ledger exactly once, keyed by checkout session id.
3. StripeWebhookHandler glues the two together and classifies the outcome.

Handled events:
- checkout.session.completed (paid or no_payment_required)
- checkout.session.async_payment_succeeded
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

import stripe

from datafromimage.billing.pricing import credits_for_amount
from datafromimage.config import StripeConfig
from datafromimage.errors import (
    AccountNotFound,
    DuplicateEvent,
    PersistenceFailure,
    SignatureInvalid,
    UnmappedPayment,
)
from datafromimage.observability.metrics import track_credits_granted, track_webhook_event
from datafromimage.storage.database import AccountDatabase

logger = logging.getLogger(__name__)

_VERIFIER_TOKEN = object()

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"

# payment_status values that mean the money has been collected
SETTLED_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})


class VerifiedEvent:
    """
    A webhook event whose signature has been checked.

    Only WebhookVerifier.verify() can build one; downstream code that takes
    a VerifiedEvent can rely on the payload being authentic.
    """

    __slots__ = ("id", "type", "created", "livemode", "data_object")

    def __init__(
        self,
        token: object,
        *,
        id: str,
        type: str,
        created: int | None,
        livemode: bool,
        data_object: dict[str, Any],
    ):
        if token is not _VERIFIER_TOKEN:
            raise TypeError("VerifiedEvent can only be created by WebhookVerifier")
        self.id = id
        self.type = type
        self.created = created
        self.livemode = livemode
        self.data_object = data_object

    def __repr__(self) -> str:
        return f"VerifiedEvent(id={self.id!r}, type={self.type!r})"


class WebhookVerifier:
    """Authenticates raw webhook deliveries. Never touches the datastore."""

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str | None) -> VerifiedEvent:
        """
        Verify a delivery and parse its event.

        Args:
            payload: Raw request body, exactly as received
            signature_header: Value of the Stripe-Signature header

        Raises:
            SignatureInvalid: Missing secret or header, signature mismatch,
                timestamp outside tolerance, or malformed event body
        """
        if not self.webhook_secret:
            raise SignatureInvalid("Webhook secret not configured")

        if not signature_header:
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Invalid payload encoding") from e

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Invalid signature: {e.user_message or e}") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            raise SignatureInvalid("Invalid payload") from e

        if not isinstance(event, dict):
            raise SignatureInvalid("Invalid payload")

        data_object = (event.get("data") or {}).get("object")
        if not event.get("id") or not event.get("type") or not isinstance(data_object, dict):
            raise SignatureInvalid("Event is missing id, type or data.object")

        return VerifiedEvent(
            _VERIFIER_TOKEN,
            id=event["id"],
            type=event["type"],
            created=event.get("created"),
            livemode=bool(event.get("livemode", False)),
            data_object=data_object,
        )


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying one verified event to the ledger."""

    status: str  # processed | duplicate | ignored
    event_type: str
    account_id: str | None = None
    credits: int | None = None
    transaction_id: str | None = None
    message: str | None = None


class CreditReconciler:
    """
    Applies verified checkout events to the credit ledger.

    The account is found through metadata.account_id (falling back to
    client_reference_id), never through the buyer's email. The grant comes
    from metadata.credits, falling back to the price table by amount.
    """

    def __init__(self, database: AccountDatabase):
        self.database = database

    async def reconcile(self, event: VerifiedEvent) -> ReconcileResult:
        """
        Credit the account for a settled checkout session.

        Raises:
            AccountNotFound: No correlator, or it names no account
            UnmappedPayment: No usable credit grant
            PersistenceFailure: Datastore write failed (nothing committed)
        """
        if event.type not in (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED):
            return ReconcileResult(
                status="ignored",
                event_type=event.type,
                message=f"Unhandled event: {event.type}",
            )

        session = event.data_object
        payment_status = session.get("payment_status")

        if event.type == CHECKOUT_COMPLETED and payment_status not in SETTLED_PAYMENT_STATUSES:
            # Delayed payment methods settle later via async_payment_succeeded
            logger.info(
                "Checkout completed without settled payment",
                extra={"checkout_session_id": session.get("id"), "payment_status": payment_status},
            )
            return ReconcileResult(
                status="ignored",
                event_type=event.type,
                message=f"Payment not settled: {payment_status}",
            )

        checkout_session_id = session.get("id")
        if not checkout_session_id:
            raise UnmappedPayment("Checkout session has no id", event_type=event.type)

        account_id = self._correlate(session)
        if not account_id:
            raise AccountNotFound(
                "Checkout session carries no account reference",
                event_type=event.type,
                checkout_session_id=checkout_session_id,
            )

        credits = self._credit_delta(session)

        try:
            transaction = await self.database.apply_payment(
                account_id=account_id,
                credits=credits,
                checkout_session_id=checkout_session_id,
                amount_cents=session.get("amount_total"),
                payment_reference=session.get("payment_intent"),
                event_id=event.id,
            )

        except DuplicateEvent as e:
            logger.info(
                "Checkout session already credited",
                extra={"account_id": account_id, "checkout_session_id": checkout_session_id},
            )
            return ReconcileResult(
                status="duplicate",
                event_type=event.type,
                account_id=account_id,
                transaction_id=e.context.get("transaction_id"),
                message="Payment already recorded",
            )

        except AccountNotFound as e:
            raise AccountNotFound(
                e.message,
                event_type=event.type,
                account_id=account_id,
                checkout_session_id=checkout_session_id,
            ) from e

        except sqlite3.Error as e:
            logger.error(
                "Failed to persist payment",
                extra={
                    "event_type": event.type,
                    "account_id": account_id,
                    "checkout_session_id": checkout_session_id,
                    "error": str(e),
                },
            )
            raise PersistenceFailure(
                f"Failed to record payment: {e}",
                event_type=event.type,
                account_id=account_id,
                checkout_session_id=checkout_session_id,
                cause=str(e),
            ) from e

        track_credits_granted(credits)
        logger.info(
            "Payment reconciled",
            extra={
                "account_id": account_id,
                "credits": credits,
                "checkout_session_id": checkout_session_id,
                "transaction_id": transaction.transaction_id,
            },
        )

        return ReconcileResult(
            status="processed",
            event_type=event.type,
            account_id=account_id,
            credits=credits,
            transaction_id=transaction.transaction_id,
            message=f"Credited {credits} credits",
        )

    @staticmethod
    def _correlate(session: dict[str, Any]) -> str | None:
        metadata = session.get("metadata") or {}
        return metadata.get("account_id") or session.get("client_reference_id")

    @staticmethod
    def _credit_delta(session: dict[str, Any]) -> int:
        metadata = session.get("metadata") or {}
        raw = metadata.get("credits")

        if raw is not None:
            try:
                credits = int(str(raw).strip())
            except ValueError:
                credits = 0
            if credits > 0:
                return credits
            logger.warning(
                "Ignoring unusable credits metadata",
                extra={"checkout_session_id": session.get("id"), "credits": raw},
            )

        amount_total = session.get("amount_total")
        credits = credits_for_amount(amount_total)
        if credits is None:
            raise UnmappedPayment(
                f"Cannot determine credits for checkout session {session.get('id')}",
                checkout_session_id=session.get("id"),
                amount_total=amount_total,
            )

        logger.warning(
            "Credits derived from charged amount",
            extra={
                "checkout_session_id": session.get("id"),
                "amount_total": amount_total,
                "credits": credits,
            },
        )
        return credits


class StripeWebhookHandler:
    """
    Handle Stripe webhook deliveries.

    Verifies, reconciles, records the outcome metric and returns a
    ReconcileResult. Errors propagate as BillingError subclasses so the
    route can map them to the status code that drives Stripe's redelivery.
    """

    def __init__(self, config: StripeConfig, database: AccountDatabase):
        self.config = config
        self.verifier = WebhookVerifier(
            webhook_secret=config.webhook_secret,
            tolerance_seconds=config.webhook_tolerance_seconds,
        )
        self.reconciler = CreditReconciler(database)

    async def handle_event(self, payload: bytes, signature: str | None) -> ReconcileResult:
        try:
            event = self.verifier.verify(payload, signature)
        except SignatureInvalid as e:
            track_webhook_event("unverified", e.error_code)
            logger.warning("Rejected webhook delivery", extra={"error": e.message})
            raise

        logger.info(
            "Processing Stripe webhook event",
            extra={"event_type": event.type, "event_id": event.id},
        )

        try:
            result = await self.reconciler.reconcile(event)
        except (AccountNotFound, UnmappedPayment, PersistenceFailure) as e:
            track_webhook_event(event.type, e.error_code)
            logger.error(
                "Webhook event processing failed",
                extra={"event_type": event.type, "event_id": event.id, "error": e.message},
            )
            raise

        track_webhook_event(event.type, result.status)
        if result.status == "ignored":
            logger.info("Webhook event ignored", extra={"event_type": event.type, "reason": result.message})
        return result
