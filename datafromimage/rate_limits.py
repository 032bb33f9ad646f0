"""
Per-account rate limiting for the paid endpoints.

Uses slowapi with in-memory storage. Requests are keyed by the
authenticated account id, or by client IP before authentication.

Endpoint limits (configurable via RATE_LIMIT_*):
    checkout:   20/hour   (each call opens a processor session)
    extraction: 30/minute (each call spends a credit and a model call)

The limiter and its counters are process-wide, and slowapi resolves limit
strings without access to the request, so the limit values come from the
process settings (get_settings()). Whether limiting applies is decided per
application from request.app.state.settings.rate_limit.enabled.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from datafromimage.config import get_settings
from datafromimage.observability.metrics import track_rate_limit_exceeded

logger = logging.getLogger(__name__)


def get_account_id_for_rate_limit(request: Request) -> str:
    """
    Rate limit key: account id when authenticated, client IP otherwise.

    The auth dependency runs before slowapi's check, so request.state.account
    is set on authenticated routes.
    """
    account = getattr(request.state, "account", None)
    if account is not None:
        return account.account_id
    return get_remote_address(request)


limiter = Limiter(key_func=get_account_id_for_rate_limit)


def rate_limiting_disabled(request: Request) -> bool:
    """slowapi exempt_when hook: skip limits for apps configured without them."""
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return not settings.rate_limit.enabled


def checkout_rate_limit() -> str:
    return get_settings().rate_limit.checkout


def extraction_rate_limit() -> str:
    return get_settings().rate_limit.extraction


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render 429 in the service's error envelope."""
    logger.warning(
        f"Rate limit exceeded: key={get_account_id_for_rate_limit(request)}, "
        f"path={request.url.path}, limit={exc.detail}"
    )
    track_rate_limit_exceeded(endpoint=request.url.path)
    return JSONResponse(
        status_code=429,
        content={"error": f"Rate limit exceeded: {exc.detail}", "code": "rate_limited"},
    )
