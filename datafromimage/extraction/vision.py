"""
Vision model client for image text extraction.

One chat completion per image, with the caller's requirements folded into a
fixed formatting prompt. Images in a batch run concurrently; the batch fails
as a whole if any image fails.
"""

import asyncio
import logging
import time

from openai import APIConnectionError, APIError, AsyncOpenAI

from datafromimage.config import VisionConfig
from datafromimage.observability.metrics import track_vision_call

logger = logging.getLogger(__name__)

DEFAULT_REQUIREMENTS = "Extract all visible text"


class VisionError(Exception):
    """The vision model could not analyse an image."""

    def __init__(self, message: str, image_index: int | None = None):
        super().__init__(message)
        self.image_index = image_index


class VisionService:
    """
    Async client for the hosted vision model.

    The SDK's own retries are disabled: a failed call fails the request and
    the caller's credit is restored, so retrying is the caller's decision.
    """

    PROMPT_TEMPLATE = """Please analyze this image and extract ONLY the following information:
{requirements}

Important instructions for formatting the response:
1. Present each piece of information on a new line
2. Do not use labels or prefixes
3. Keep the format simple and clean
4. Focus only on extracting exactly what was requested
5. Do not add any additional text or explanations
6. If extracting multiple items of the same type (like names), list them one per line

Example format:
John Smith
Jane Doe
Robert Johnson
"""

    def __init__(self, config: VisionConfig, client: AsyncOpenAI | None = None):
        """
        Initialize vision service.

        Args:
            config: Vision model configuration
            client: Preconfigured OpenAI client (built from config when omitted)
        """
        self.config = config

        if client is not None:
            self.client = client
        elif config.api_key:
            self.client = AsyncOpenAI(
                api_key=config.api_key,
                base_url=config.base_url,
                timeout=config.timeout_seconds,
                max_retries=0,
            )
        else:
            logger.warning("Vision API key not configured - text extraction disabled")
            self.client = None

        self.total_tokens_used = 0
        self.total_requests = 0

    @property
    def is_enabled(self) -> bool:
        return self.client is not None

    def build_prompt(self, requirements: str | None) -> str:
        requirements = (requirements or "").strip() or DEFAULT_REQUIREMENTS
        return self.PROMPT_TEMPLATE.format(requirements=requirements)

    @staticmethod
    def image_url(image_base64: str) -> str:
        """Data URL for the model; payloads that already are data URLs pass through."""
        if image_base64.startswith("data:"):
            return image_base64
        return f"data:image/jpeg;base64,{image_base64}"

    @staticmethod
    def clean_output(content: str | None) -> str:
        """Strip every line and drop the blank ones."""
        lines = (line.strip() for line in (content or "").splitlines())
        return "\n".join(line for line in lines if line)

    async def extract_text(
        self,
        image_base64: str,
        requirements: str | None = None,
        image_index: int | None = None,
    ) -> str:
        """
        Extract text from one image.

        Raises:
            VisionError: Client unconfigured, API failure or empty response
        """
        if self.client is None:
            raise VisionError("Vision model not configured", image_index=image_index)

        start = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model_name,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": self.build_prompt(requirements)},
                            {
                                "type": "image_url",
                                "image_url": {"url": self.image_url(image_base64)},
                            },
                        ],
                    }
                ],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )

        except (APIError, APIConnectionError) as e:
            track_vision_call(self.config.model_name, success=False)
            logger.error(
                f"Vision API error: {e}",
                extra={"image_index": image_index, "error_type": type(e).__name__},
            )
            raise VisionError("Failed to analyze image", image_index=image_index) from e

        duration = time.perf_counter() - start

        if not response.choices:
            track_vision_call(self.config.model_name, success=False, duration_seconds=duration)
            raise VisionError("Vision model returned no choices", image_index=image_index)

        track_vision_call(self.config.model_name, success=True, duration_seconds=duration)
        self.total_requests += 1
        if response.usage is not None:
            self.total_tokens_used += response.usage.total_tokens

        return self.clean_output(response.choices[0].message.content)

    async def extract_batch(
        self, images_base64: list[str], requirements: str | None = None
    ) -> list[str]:
        """
        Extract text from several images concurrently.

        The first failing image cancels the calls still in flight.

        Returns:
            Per-image texts, in input order

        Raises:
            VisionError: If any image fails
        """
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [
                    group.create_task(self.extract_text(image, requirements, image_index=index))
                    for index, image in enumerate(images_base64)
                ]
        except ExceptionGroup as eg:
            vision_errors = [e for e in eg.exceptions if isinstance(e, VisionError)]
            raise (vision_errors or eg.exceptions)[0]

        return [task.result() for task in tasks]
