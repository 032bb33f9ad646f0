"""
Account, ledger and extraction data models.

Accounts are keyed by the identity provider's stable user id. Email is kept
for display only: it is mutable and never used to correlate payments.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator


class Account(BaseModel):
    """A registered user and their credit balance."""

    account_id: str = Field(..., min_length=1, max_length=128)
    email: str | None = Field(default=None)
    credits: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str | None) -> str | None:
        return v.lower() if v else None

    def has_credits(self, required: int = 1) -> bool:
        return self.credits >= required


class Transaction(BaseModel):
    """
    Immutable record of a credit purchase.

    checkout_session_id is the idempotency key: one row per checkout session.
    """

    transaction_id: str
    account_id: str
    amount_cents: int | None = Field(default=None, ge=0)
    credits: int = Field(..., gt=0)
    checkout_session_id: str
    payment_reference: str | None = Field(
        default=None, description="Processor payment reference (payment intent id)"
    )
    event_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Extraction(BaseModel):
    """One completed text extraction for a single source image."""

    extraction_id: str
    account_id: str
    filename: str
    extracted_text: str
    requirements: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ExtractionCreate(BaseModel):
    """Per-image payload persisted after a successful inference call."""

    filename: str = Field(..., min_length=1, max_length=255)
    extracted_text: str


class Review(BaseModel):
    """Star rating and free-text feedback left after an extraction."""

    review_id: str
    account_id: str
    stars: int = Field(..., ge=1, le=5)
    feedback: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ReviewCreate(BaseModel):
    """Schema for submitting a review."""

    stars: int = Field(..., ge=1, le=5)
    feedback: str | None = Field(default=None, max_length=2000)
