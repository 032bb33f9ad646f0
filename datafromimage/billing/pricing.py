"""
Credit price table.

The single source of truth for tier key -> (charge, credit grant). Checkout
session creation reads it forward; webhook reconciliation may read it in
reverse as a fallback when event metadata carries no credit grant.
"""

from dataclasses import dataclass

from datafromimage.errors import UnknownPriceTier


@dataclass(frozen=True)
class PriceTier:
    """One purchasable credit pack."""

    key: str
    amount_cents: int
    credits: int

    @property
    def label(self) -> str:
        return f"{self.credits} Credits"

    @property
    def amount_display(self) -> str:
        return f"${self.amount_cents / 100:.2f}"


PRICE_TABLE: dict[str, PriceTier] = {
    tier.key: tier
    for tier in (
        PriceTier(key="price_100", amount_cents=1000, credits=100),
        PriceTier(key="price_40", amount_cents=500, credits=40),
        PriceTier(key="price_15", amount_cents=300, credits=15),
    )
}


def index_credits_by_amount(table: dict[str, PriceTier]) -> dict[int, int]:
    """
    Reverse index (charge amount -> credits) for the amount fallback.

    Raises:
        ValueError: If two tiers share a charge amount, since a paid amount
            could then not be resolved to a single tier
    """
    index: dict[int, int] = {}
    for tier in table.values():
        if tier.amount_cents in index:
            raise ValueError(f"Duplicate price tier amount: {tier.amount_cents} cents ({tier.key})")
        index[tier.amount_cents] = tier.credits
    return index


_CREDITS_BY_AMOUNT = index_credits_by_amount(PRICE_TABLE)


def get_price_tier(key: str) -> PriceTier:
    """
    Look up a price tier by key.

    Raises:
        UnknownPriceTier: If the key is not in the price table
    """
    tier = PRICE_TABLE.get(key)
    if tier is None:
        raise UnknownPriceTier(f"Unknown price tier: {key!r}", price_tier=key)
    return tier


def credits_for_amount(amount_cents: int | None) -> int | None:
    """Map a charged amount back to its tier's credit grant, or None."""
    if amount_cents is None:
        return None
    return _CREDITS_BY_AMOUNT.get(int(amount_cents))


def list_price_tiers() -> list[PriceTier]:
    """Price tiers ordered from largest to smallest pack."""
    return sorted(PRICE_TABLE.values(), key=lambda tier: tier.credits, reverse=True)
