"""
Circuit breakers for external dependencies.

Prevents piling requests onto the payment processor while it is failing.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Only checkout session creation goes through a breaker. Webhook handling is
inbound and the vision call is compensated per request, so neither needs one.
"""

import logging

import stripe
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

logger = logging.getLogger(__name__)


class StripeCircuitBreakerError(Exception):
    """Circuit breaker open for Stripe operations."""

    pass


class _LoggingListener(CircuitBreakerListener):
    """Log every breaker state transition."""

    def state_change(self, cb: CircuitBreaker, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        old_name = getattr(old_state, "name", str(old_state))
        extra = {
            "breaker_name": cb.name,
            "old_state": old_name,
            "state": new_name,
            "fail_count": cb.fail_counter,
            "fail_max": cb.fail_max,
        }
        if new_name == "open":
            logger.error(f"Circuit breaker OPENED: {cb.name}", extra=extra)
        elif new_name == "half-open":
            logger.warning(f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)", extra=extra)
        else:
            logger.info(f"Circuit breaker CLOSED: {cb.name}", extra=extra)


# Stripe circuit breaker
# Opens after 3 consecutive failures, stays open for 30 seconds.
# Caller mistakes (bad params, auth) are not outages and never trip it.
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    exclude=[stripe.InvalidRequestError, stripe.AuthenticationError],
    name="Stripe",
    listeners=[_LoggingListener()],
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Usage:
        breaker = get_stripe_breaker()
        with breaker.calling():
            session = await client.checkout.sessions.create_async(params=...)
    """
    return stripe_breaker


async def call_stripe(func, *args, **kwargs):
    """
    Await an async Stripe operation through the breaker.

    Raises:
        StripeCircuitBreakerError: If the circuit is open
    """
    try:
        with stripe_breaker.calling():
            return await func(*args, **kwargs)
    except CircuitBreakerError as e:
        logger.warning(
            "Stripe circuit breaker OPEN - failing fast",
            extra={"state": stripe_breaker.current_state},
        )
        raise StripeCircuitBreakerError(
            f"Stripe service unavailable (circuit breaker open). "
            f"Retry after {stripe_breaker.reset_timeout} seconds."
        ) from e


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")
