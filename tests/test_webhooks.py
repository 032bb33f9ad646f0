"""
Tests for webhook verification and credit reconciliation.

Signatures are real Stripe-format HMACs, verified by the stripe library.
"""

import json
import time

import pytest

from datafromimage.billing.webhooks import (
    CreditReconciler,
    StripeWebhookHandler,
    VerifiedEvent,
    WebhookVerifier,
)
from datafromimage.errors import (
    AccountNotFound,
    PersistenceFailure,
    SignatureInvalid,
    UnmappedPayment,
)


@pytest.fixture
def verifier(test_settings) -> WebhookVerifier:
    return WebhookVerifier(webhook_secret=test_settings.stripe.webhook_secret, tolerance_seconds=300)


@pytest.fixture
def handler(database, test_settings) -> StripeWebhookHandler:
    return StripeWebhookHandler(test_settings.stripe, database)


class TestWebhookVerifier:
    def test_valid_signature_yields_event(self, verifier, sign_payload, make_checkout_event):
        payload = make_checkout_event()

        event = verifier.verify(payload.encode(), sign_payload(payload))

        assert isinstance(event, VerifiedEvent)
        assert event.type == "checkout.session.completed"
        assert event.data_object["id"] == "cs_test_abc"

    def test_wrong_secret_rejected(self, verifier, sign_payload, make_checkout_event):
        payload = make_checkout_event()

        with pytest.raises(SignatureInvalid):
            verifier.verify(payload.encode(), sign_payload(payload, secret="whsec_other"))

    def test_tampered_body_rejected(self, verifier, sign_payload, make_checkout_event):
        payload = make_checkout_event(credits="15")
        signature = sign_payload(payload)
        tampered = payload.replace('"credits": "15"', '"credits": "1500"')

        with pytest.raises(SignatureInvalid):
            verifier.verify(tampered.encode(), signature)

    def test_stale_timestamp_rejected(self, verifier, sign_payload, make_checkout_event):
        payload = make_checkout_event()
        signature = sign_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(SignatureInvalid):
            verifier.verify(payload.encode(), signature)

    def test_missing_header_rejected(self, verifier, make_checkout_event):
        with pytest.raises(SignatureInvalid):
            verifier.verify(make_checkout_event().encode(), None)

    def test_missing_secret_rejects_everything(self, sign_payload, make_checkout_event):
        payload = make_checkout_event()

        with pytest.raises(SignatureInvalid):
            WebhookVerifier(webhook_secret="").verify(payload.encode(), sign_payload(payload))

    def test_signed_non_json_rejected(self, verifier, sign_payload):
        payload = "not json"

        with pytest.raises(SignatureInvalid):
            verifier.verify(payload.encode(), sign_payload(payload))

    def test_event_cannot_be_built_without_verifier(self):
        with pytest.raises(TypeError):
            VerifiedEvent(
                object(),
                id="evt_forged",
                type="checkout.session.completed",
                created=None,
                livemode=False,
                data_object={},
            )


def _verified(verifier, sign_payload, payload: str) -> VerifiedEvent:
    return verifier.verify(payload.encode(), sign_payload(payload))


class TestCreditReconciler:
    @pytest.mark.asyncio
    async def test_hundred_credit_tier_adds_exactly_hundred(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        event = _verified(verifier, sign_payload, make_checkout_event(credits="100"))

        result = await CreditReconciler(database).reconcile(event)

        assert result.status == "processed"
        assert result.credits == 100
        assert await database.get_credits("user-alice") == 105

    @pytest.mark.asyncio
    async def test_replay_is_acknowledged_without_second_credit(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        event = _verified(verifier, sign_payload, make_checkout_event(credits="40"))
        reconciler = CreditReconciler(database)

        first = await reconciler.reconcile(event)
        second = await reconciler.reconcile(event)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert await database.get_credits("user-alice") == 45
        assert len(await database.list_transactions("user-alice")) == 1

    @pytest.mark.asyncio
    async def test_async_payment_after_unpaid_completion_credits_once(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        reconciler = CreditReconciler(database)

        pending = _verified(
            verifier, sign_payload, make_checkout_event(payment_status="unpaid", credits="15")
        )
        settled = _verified(
            verifier,
            sign_payload,
            make_checkout_event(
                event_type="checkout.session.async_payment_succeeded",
                event_id="evt_test_2",
                credits="15",
            ),
        )

        assert (await reconciler.reconcile(pending)).status == "ignored"
        assert (await reconciler.reconcile(settled)).status == "processed"
        assert await database.get_credits("user-alice") == 20

    @pytest.mark.asyncio
    async def test_correlates_by_account_id_not_email(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice", "someone-else@example.com")
        await database.ensure_account("user-bob", "bob@example.com")
        event = _verified(
            verifier, sign_payload, make_checkout_event(account_id="user-bob", credits="15")
        )

        await CreditReconciler(database).reconcile(event)

        assert await database.get_credits("user-bob") == 20
        assert await database.get_credits("user-alice") == 5

    @pytest.mark.asyncio
    async def test_client_reference_id_fallback(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-bob")
        event = _verified(
            verifier,
            sign_payload,
            make_checkout_event(account_id=None, client_reference_id="user-bob", credits="40"),
        )

        result = await CreditReconciler(database).reconcile(event)

        assert result.account_id == "user-bob"
        assert await database.get_credits("user-bob") == 45

    @pytest.mark.asyncio
    async def test_amount_fallback_when_metadata_lacks_credits(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        event = _verified(
            verifier, sign_payload, make_checkout_event(credits=None, amount_total=500)
        )

        result = await CreditReconciler(database).reconcile(event)

        assert result.credits == 40
        assert await database.get_credits("user-alice") == 45

    @pytest.mark.asyncio
    async def test_unmapped_payment(self, database, verifier, sign_payload, make_checkout_event):
        await database.ensure_account("user-alice")
        event = _verified(
            verifier, sign_payload, make_checkout_event(credits=None, amount_total=777)
        )

        with pytest.raises(UnmappedPayment) as exc_info:
            await CreditReconciler(database).reconcile(event)

        assert exc_info.value.status_code == 422
        assert await database.get_credits("user-alice") == 5

    @pytest.mark.asyncio
    async def test_unknown_account(self, database, verifier, sign_payload, make_checkout_event):
        event = _verified(verifier, sign_payload, make_checkout_event(account_id="user-ghost"))

        with pytest.raises(AccountNotFound) as exc_info:
            await CreditReconciler(database).reconcile(event)

        assert exc_info.value.context["account_id"] == "user-ghost"
        assert await database.get_transaction_by_session("cs_test_abc") is None

    @pytest.mark.asyncio
    async def test_missing_correlator(self, database, verifier, sign_payload, make_checkout_event):
        event = _verified(verifier, sign_payload, make_checkout_event(account_id=None))

        with pytest.raises(AccountNotFound):
            await CreditReconciler(database).reconcile(event)

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(self, database, verifier, sign_payload):
        payload = json.dumps(
            {"id": "evt_x", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}
        )
        event = _verified(verifier, sign_payload, payload)

        result = await CreditReconciler(database).reconcile(event)

        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_datastore_failure_is_persistence_failure(
        self, database, verifier, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        event = _verified(verifier, sign_payload, make_checkout_event())
        database._get_connection().execute("DROP TABLE transactions")

        with pytest.raises(PersistenceFailure) as exc_info:
            await CreditReconciler(database).reconcile(event)

        error = exc_info.value
        assert error.status_code == 503
        assert error.context["event_type"] == "checkout.session.completed"
        assert error.context["account_id"] == "user-alice"
        assert "transactions" in error.context["cause"]
        assert await database.get_credits("user-alice") == 5


class TestStripeWebhookHandler:
    @pytest.mark.asyncio
    async def test_bad_signature_never_touches_ledger(
        self, database, handler, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        payload = make_checkout_event()

        with pytest.raises(SignatureInvalid):
            await handler.handle_event(payload.encode(), sign_payload(payload, secret="whsec_bad"))

        assert await database.get_credits("user-alice") == 5
        assert await database.list_transactions("user-alice") == []

    @pytest.mark.asyncio
    async def test_valid_delivery_credits(
        self, database, handler, sign_payload, make_checkout_event
    ):
        await database.ensure_account("user-alice")
        payload = make_checkout_event(credits="15", amount_total=300)

        result = await handler.handle_event(payload.encode(), sign_payload(payload))

        assert result.status == "processed"
        assert await database.get_credits("user-alice") == 20
