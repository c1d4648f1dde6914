"""Text descriptions for generated images."""

import base64
from typing import Any

import httpx
import structlog

from variation_batch.core.config import settings
from variation_batch.services.reference_data import (
    BreedCoatSelector,
    FormatSelector,
    ItemSelector,
    OutfitSelector,
)

logger = structlog.get_logger()


class DescriptionError(Exception):
    """Raised when a description could not be produced."""


def default_description(selector: ItemSelector) -> str:
    """Fallback description used when the description service fails."""
    if isinstance(selector, BreedCoatSelector):
        return f"Generated {selector.breed.name} with {selector.coat.name} coat"
    if isinstance(selector, OutfitSelector):
        return f"Generated variation wearing {selector.outfit.name}"
    if isinstance(selector, FormatSelector):
        return f"Generated variation in {selector.format.name} format"
    return "Batch generated variation"


def subject_for(selector: ItemSelector) -> tuple[str | None, list[str] | None]:
    """Subject name and personality traits to steer the description."""
    if isinstance(selector, BreedCoatSelector):
        traits = selector.breed.personality_traits
        if isinstance(traits, str):
            traits = [traits]
        return selector.breed.name, traits
    return None, None


def build_description_prompt(subject_name: str | None, traits: list[str] | None) -> str:
    prompt = (
        "Write a warm, two-sentence product description for this pet portrait. "
        "Do not mention that the image was generated."
    )
    if subject_name:
        prompt += f" The animal is a {subject_name}."
    if traits:
        prompt += f" Personality: {', '.join(traits)}."
    return prompt


class ImageDescriptionService:
    """Service for describing images with a Gemini text model."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.api_key = api_key or settings.gemini_api_key
        self.api_url = (api_url or settings.gemini_api_url).rstrip("/")
        self.model = model or settings.gemini_description_model
        self.timeout = timeout or settings.gemini_timeout_seconds

    async def describe(
        self,
        image_data: bytes,
        subject_name: str | None = None,
        personality_traits: list[str] | None = None,
        mime_type: str = "image/png",
    ) -> str:
        """Describe an image.

        Raises:
            DescriptionError: If the request fails or returns no text
        """
        if not self.api_key:
            raise DescriptionError("Gemini API key not configured")

        body = {
            "contents": [
                {
                    "parts": [
                        {"text": build_description_prompt(subject_name, personality_traits)},
                        {
                            "inline_data": {
                                "mime_type": mime_type,
                                "data": base64.b64encode(image_data).decode("ascii"),
                            }
                        },
                    ]
                }
            ]
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/models/{self.model}:generateContent",
                    headers={"x-goog-api-key": self.api_key},
                    json=body,
                )
                response.raise_for_status()
                payload: dict[str, Any] = response.json()
        except httpx.HTTPError as e:
            raise DescriptionError(f"Description request failed: {e}") from e

        texts = [
            part["text"]
            for candidate in payload.get("candidates", [])
            for part in candidate.get("content", {}).get("parts", [])
            if part.get("text")
        ]
        if not texts:
            raise DescriptionError("Description response contained no text")

        description = " ".join(text.strip() for text in texts)
        logger.debug("Generated description", subject=subject_name, length=len(description))
        return description
