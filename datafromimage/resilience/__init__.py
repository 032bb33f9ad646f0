"""
Resilience patterns for external dependencies.

Circuit breakers prevent cascade failures when dependencies fail.
"""

from datafromimage.resilience.circuit_breakers import (
    StripeCircuitBreakerError,
    call_stripe,
    get_stripe_breaker,
    reset_all_breakers,
)

__all__ = [
    "StripeCircuitBreakerError",
    "call_stripe",
    "get_stripe_breaker",
    "reset_all_breakers",
]
