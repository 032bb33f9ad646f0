"""
Credit gate around vision inference.

Flow for one request (a batch of one or more images):
1. Balance check: an empty balance is rejected before any model call
2. Conditional debit of one credit for the whole batch
3. Vision inference for every image
4. On inference failure, the debited credit is added back
5. On success, one extraction row per image is stored

The balance check is advisory; the conditional debit is what prevents two
concurrent requests from spending the same last credit.
"""

import logging
import sqlite3
from dataclasses import dataclass, field

from datafromimage.errors import (
    AccountNotFound,
    InferenceFailure,
    InsufficientCredits,
    PersistenceFailure,
)
from datafromimage.extraction.vision import VisionError, VisionService
from datafromimage.models.account import Extraction, ExtractionCreate
from datafromimage.observability.logging import OperationContext
from datafromimage.observability.metrics import (
    track_credits_debited,
    track_credits_restored,
    track_extraction,
)
from datafromimage.storage.database import AccountDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageInput:
    """One submitted image: display filename plus base64 payload (or data URL)."""

    filename: str
    data: str


@dataclass(frozen=True)
class ExtractionResult:
    extracted_text: str
    extractions: list[Extraction] = field(default_factory=list)


def combine_texts(texts: list[str]) -> str:
    """Label each image's text and join the blocks with blank lines."""
    return "\n\n".join(f"Image {index}:\n{text}" for index, text in enumerate(texts, start=1))


class ExtractionGate:
    """Debits credits around vision inference, compensating on failure."""

    def __init__(
        self,
        database: AccountDatabase,
        vision: VisionService,
        credits_per_extraction: int = 1,
    ):
        self.database = database
        self.vision = vision
        self.credits_per_extraction = credits_per_extraction

    async def extract(
        self,
        account_id: str,
        images: list[ImageInput],
        requirements: str | None = None,
    ) -> ExtractionResult:
        """
        Run a paid extraction for a batch of images.

        Raises:
            ValueError: If no images were given
            AccountNotFound: Unknown account
            InsufficientCredits: Balance cannot cover the batch (nothing debited)
            InferenceFailure: Vision call failed (debit restored)
            PersistenceFailure: Datastore write failed
        """
        if not images:
            raise ValueError("At least one image is required")

        cost = self.credits_per_extraction

        balance = await self.database.get_credits(account_id)
        if balance is None:
            raise AccountNotFound(f"Account not found: {account_id}", account_id=account_id)
        if balance < cost:
            track_extraction("insufficient_credits")
            raise InsufficientCredits(
                "Insufficient credits", account_id=account_id, balance=balance, required=cost
            )

        try:
            debited = await self.database.debit_credits(account_id, cost, reason="extraction")
        except sqlite3.Error as e:
            track_extraction("persistence_failure")
            raise PersistenceFailure(
                f"Failed to debit credits: {e}", account_id=account_id, cause=str(e)
            ) from e

        if not debited:
            # Another request spent the balance between the check and the debit
            track_extraction("insufficient_credits")
            raise InsufficientCredits(
                "Insufficient credits", account_id=account_id, required=cost
            )
        track_credits_debited(cost)

        try:
            with OperationContext("vision_extraction", images=len(images)):
                texts = await self.vision.extract_batch(
                    [image.data for image in images], requirements
                )
        except VisionError as e:
            restored = await self._restore(account_id, cost)
            track_extraction("inference_failure")
            raise InferenceFailure(
                "Failed to analyze images",
                account_id=account_id,
                image_index=e.image_index,
                credits_restored=restored,
            ) from e
        except BaseException:
            # Cancelled (client disconnect, shutdown) or an unexpected error:
            # no text was delivered, so the credit goes back
            await self._restore(account_id, cost)
            track_extraction("inference_failure")
            raise

        items = [
            ExtractionCreate(filename=image.filename, extracted_text=text)
            for image, text in zip(images, texts, strict=True)
        ]

        try:
            extractions = await self.database.create_extractions(account_id, items, requirements)
        except sqlite3.Error as e:
            # Inference was delivered and paid for; the credit stays spent
            logger.error(
                "Failed to store extractions",
                extra={"account_id": account_id, "images": len(images), "error": str(e)},
            )
            track_extraction("persistence_failure")
            raise PersistenceFailure(
                f"Failed to store extractions: {e}", account_id=account_id, cause=str(e)
            ) from e

        track_extraction("success")
        logger.info(
            "Extraction completed",
            extra={"account_id": account_id, "images": len(images), "credits_spent": cost},
        )
        return ExtractionResult(extracted_text=combine_texts(texts), extractions=extractions)

    async def _restore(self, account_id: str, credits: int) -> bool:
        try:
            restored = await self.database.restore_credits(
                account_id, credits, reason="inference_failure"
            )
        except sqlite3.Error as e:
            logger.error(
                "Failed to restore credits after inference failure",
                extra={"account_id": account_id, "credits": credits, "error": str(e)},
            )
            return False

        if restored:
            track_credits_restored(credits)
            logger.info(
                "Restored credits after inference failure",
                extra={"account_id": account_id, "credits": credits},
            )
        return restored
