"""
Tests for per-account rate limiting on the paid endpoints.
"""

import base64

import pytest
from fastapi.testclient import TestClient

from datafromimage import rate_limits
from datafromimage.config import RateLimitConfig
from datafromimage.main import create_app
from datafromimage.rate_limits import limiter

IMAGE = base64.b64encode(b"fake image bytes").decode("ascii")


@pytest.fixture
def limited_client(services, monkeypatch):
    services.settings.rate_limit = RateLimitConfig(enabled=True, extraction="2/minute")
    monkeypatch.setattr(rate_limits, "get_settings", lambda: services.settings)
    limiter.reset()

    with TestClient(create_app(services=services)) as client:
        yield client

    limiter.reset()


def test_extraction_limited_per_account(limited_client, alice_headers, bob_headers):
    for _ in range(2):
        response = limited_client.post(
            "/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers
        )
        assert response.status_code == 200

    response = limited_client.post(
        "/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers
    )

    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"

    # Limits are keyed by account, so another account is unaffected
    response = limited_client.post(
        "/api/extract-text", json={"images": [IMAGE]}, headers=bob_headers
    )
    assert response.status_code == 200


def test_rejected_request_spends_no_credit(limited_client, alice_headers):
    for _ in range(3):
        limited_client.post("/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers)

    credits = limited_client.get("/api/credits", headers=alice_headers).json()["credits"]

    assert credits == 3


def test_limits_apply_only_to_apps_that_enable_them(limited_client, services, alice_headers):
    for _ in range(2):
        limited_client.post("/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers)

    unlimited_settings = services.settings.model_copy(
        update={"rate_limit": RateLimitConfig(enabled=False)}
    )
    with TestClient(create_app(settings=unlimited_settings, services=services)) as unlimited:
        for _ in range(3):
            response = unlimited.post(
                "/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers
            )
            assert response.status_code == 200

    # Building another app leaves the limited one enforcing its limits
    response = limited_client.post(
        "/api/extract-text", json={"images": [IMAGE]}, headers=alice_headers
    )
    assert response.status_code == 429
