"""
Extraction endpoints.

- POST /api/extract-text: paid text extraction for a batch of images
- GET  /api/extractions: the caller's extraction history
- POST /api/reviews: star rating and feedback after an extraction
"""

import base64
import binascii
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from datafromimage.auth.dependencies import get_current_account
from datafromimage.extraction.gate import ImageInput
from datafromimage.models.account import Account, ReviewCreate
from datafromimage.observability.request_limits import validate_file_size
from datafromimage.rate_limits import extraction_rate_limit, limiter, rate_limiting_disabled
from datafromimage.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Extraction"])


class ExtractTextRequest(BaseModel):
    """Images are base64 strings or data URLs; base64Images is the legacy field name."""

    model_config = ConfigDict(populate_by_name=True)

    images: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("images", "base64Images")
    )
    requirements: str | None = Field(default=None, max_length=2000)
    filenames: list[str] | None = None


def _decode_image(data: str) -> bytes:
    """Decode a base64 payload or data URL. Raises ValueError if malformed."""
    payload = data
    if data.startswith("data:"):
        header, sep, payload = data.partition(",")
        if not sep or ";base64" not in header:
            raise ValueError("Image data URL must be base64 encoded")
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Image is not valid base64") from e
    if not decoded:
        raise ValueError("Image is empty")
    return decoded


def _build_image_inputs(body: ExtractTextRequest, services: Services) -> list[ImageInput]:
    if not body.images:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No images provided")

    max_images = services.settings.billing.max_images_per_request
    if len(body.images) > max_images:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Too many images: {len(body.images)} (maximum {max_images})",
        )

    filenames = body.filenames or []
    max_size = services.settings.service.max_file_upload_size
    inputs = []

    for index, data in enumerate(body.images):
        filename = filenames[index] if index < len(filenames) and filenames[index] else f"image-{index + 1}"
        try:
            validate_file_size(_decode_image(data), max_size, filename=filename)
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"{filename}: {e}"
            ) from e
        inputs.append(ImageInput(filename=filename, data=data))

    return inputs


@router.post("/extract-text")
@limiter.limit(extraction_rate_limit, exempt_when=rate_limiting_disabled)
async def extract_text(
    request: Request,  # Required by slowapi
    body: ExtractTextRequest,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """
    Extract text from a batch of images for one credit.

    Raises:
        HTTPException 400: No images, too many, malformed or oversize
        InsufficientCredits (402): Balance is empty, nothing was called
        InferenceFailure (502): Model failed, credit restored
        PersistenceFailure (503): Datastore failed
    """
    images = _build_image_inputs(body, services)

    result = await services.extraction_gate.extract(
        account.account_id, images, requirements=body.requirements
    )
    remaining = await services.database.get_credits(account.account_id)

    return {"extractedText": result.extracted_text, "creditsRemaining": remaining}


@router.get("/extractions")
async def list_extractions(
    limit: int = Query(default=20, ge=1, le=100),
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    extractions = await services.database.list_extractions(account.account_id, limit=limit)
    return {
        "extractions": [
            {
                "extractionId": e.extraction_id,
                "filename": e.filename,
                "extractedText": e.extracted_text,
                "requirements": e.requirements,
                "createdAt": e.created_at.isoformat(),
            }
            for e in extractions
        ]
    }


@router.post("/reviews", status_code=status.HTTP_201_CREATED)
async def create_review(
    review: ReviewCreate,
    account: Account = Depends(get_current_account),
    services: Services = Depends(get_services),
):
    """Store a star rating (1-5) with optional feedback."""
    created = await services.database.create_review(account.account_id, review)
    logger.info("Review submitted", extra={"account_id": account.account_id, "stars": created.stars})
    return {"reviewId": created.review_id, "stars": created.stars}
