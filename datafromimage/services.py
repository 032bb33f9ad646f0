"""
Service container.

Every long-lived dependency (datastore, HTTP clients, Stripe, OpenAI) is
created once by build_services() during application startup and reached by
route handlers through the get_services() dependency. Tests construct a
Services directly with fakes in place of the external clients.
"""

import logging
from dataclasses import dataclass

import httpx
import stripe
from fastapi import HTTPException, Request, status
from openai import AsyncOpenAI

from datafromimage.auth.identity import IdentityClient
from datafromimage.billing.stripe_service import CheckoutService
from datafromimage.billing.webhooks import StripeWebhookHandler
from datafromimage.config import Settings
from datafromimage.extraction.gate import ExtractionGate
from datafromimage.extraction.vision import VisionService
from datafromimage.storage.database import AccountDatabase

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    database: AccountDatabase
    identity: IdentityClient
    checkout: CheckoutService
    webhook_handler: StripeWebhookHandler
    vision: VisionService
    extraction_gate: ExtractionGate

    async def aclose(self) -> None:
        await self.identity.aclose()
        self.database.close()


async def build_services(
    settings: Settings,
    *,
    stripe_client: stripe.StripeClient | None = None,
    openai_client: AsyncOpenAI | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Services:
    """
    Build and initialize all services from settings.

    External clients may be passed in; anything omitted is built from config.
    """
    database = AccountDatabase(
        db_path=settings.database.path,
        busy_timeout_seconds=settings.database.busy_timeout_seconds,
        signup_credits=settings.billing.signup_credits,
    )
    await database.initialize()

    vision = VisionService(settings.vision, client=openai_client)

    return Services(
        settings=settings,
        database=database,
        identity=IdentityClient(settings.identity, http_client=http_client),
        checkout=CheckoutService(settings.stripe, settings.billing, client=stripe_client),
        webhook_handler=StripeWebhookHandler(settings.stripe, database),
        vision=vision,
        extraction_gate=ExtractionGate(
            database,
            vision,
            credits_per_extraction=settings.billing.credits_per_extraction,
        ),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the container attached to the running app."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return services
