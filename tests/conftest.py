"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings and a real SQLite database per test
- Stripe-format webhook signing and checkout event payloads
- Mock Stripe, OpenAI and identity provider clients
- FastAPI test client wired to an injected service container
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from datafromimage.config import (
    BillingConfig,
    DatabaseConfig,
    IdentityConfig,
    LoggingConfig,
    RateLimitConfig,
    Settings,
    StripeConfig,
    VisionConfig,
)
from datafromimage.main import create_app
from datafromimage.resilience import reset_all_breakers
from datafromimage.services import build_services
from datafromimage.storage.database import AccountDatabase

WEBHOOK_SECRET = "whsec_test_secret_for_signature_checks"
IDENTITY_URL = "https://identity.test"

# access token -> identity provider user payload
TEST_USERS = {
    "token-alice": {"id": "user-alice", "email": "Alice@Example.com"},
    "token-bob": {"id": "user-bob", "email": "bob@example.com"},
}


@pytest.fixture(autouse=True)
def _reset_breakers():
    reset_all_breakers()
    yield
    reset_all_breakers()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings pointing at a throwaway database."""
    return Settings(
        stripe=StripeConfig(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET),
        identity=IdentityConfig(url=IDENTITY_URL, anon_key="anon-key"),
        vision=VisionConfig(api_key="sk-vision-test-key"),
        database=DatabaseConfig(path=str(tmp_path / "datafromimage.db")),
        billing=BillingConfig(public_url="https://app.test/"),
        rate_limit=RateLimitConfig(enabled=False),
        logging=LoggingConfig(json_output=False),
    )


@pytest.fixture
async def database(tmp_path):
    db = AccountDatabase(db_path=str(tmp_path / "ledger.db"))
    await db.initialize()
    yield db
    db.close()


@pytest.fixture
def sign_payload():
    """Return a function producing a Stripe-Signature header for a payload."""

    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


@pytest.fixture
def make_checkout_event():
    """Return a builder for checkout.session.* event payloads (as JSON strings)."""

    def _build(
        session_id: str = "cs_test_abc",
        account_id: str | None = "user-alice",
        credits: str | None = "100",
        amount_total: int | None = 1000,
        payment_status: str = "paid",
        event_type: str = "checkout.session.completed",
        event_id: str = "evt_test_1",
        client_reference_id: str | None = None,
    ) -> str:
        metadata = {}
        if account_id is not None:
            metadata["account_id"] = account_id
        if credits is not None:
            metadata["credits"] = credits
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "currency": "usd",
                    "payment_status": payment_status,
                    "payment_intent": "pi_test_1",
                    "client_reference_id": client_reference_id,
                    "customer_details": {"email": "someone-else@example.com"},
                    "metadata": metadata,
                }
            },
        }
        return json.dumps(event)

    return _build


def _completion(content: str | None, total_tokens: int = 42):
    """Minimal chat completion response shaped like the OpenAI SDK's."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


@pytest.fixture
def make_completion():
    return _completion


@pytest.fixture
def mock_openai_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=_completion("  John Smith \n\n Jane Doe  \n")
    )
    return client


@pytest.fixture
def mock_stripe_client() -> MagicMock:
    client = MagicMock()
    client.checkout.sessions.create_async = AsyncMock(
        return_value=SimpleNamespace(id="cs_test_created")
    )
    return client


def _identity_handler(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("authorization", "").removeprefix("Bearer ")
    user = TEST_USERS.get(token)
    if user is None:
        return httpx.Response(401, json={"msg": "invalid JWT"})
    return httpx.Response(200, json=user)


@pytest.fixture
def identity_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_identity_handler))


@pytest.fixture
async def services(test_settings, mock_stripe_client, mock_openai_client, identity_http_client):
    container = await build_services(
        test_settings,
        stripe_client=mock_stripe_client,
        openai_client=mock_openai_client,
        http_client=identity_http_client,
    )
    yield container
    await identity_http_client.aclose()
    await container.aclose()


@pytest.fixture
def app_client(services) -> TestClient:
    """FastAPI test client using the injected service container."""
    app = create_app(services=services)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def alice_headers() -> dict[str, str]:
    return {"Authorization": "Bearer token-alice"}


@pytest.fixture
def bob_headers() -> dict[str, str]:
    return {"Authorization": "Bearer token-bob"}
