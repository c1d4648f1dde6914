"""Gemini image variation service."""

import base64
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from variation_batch.core.config import settings
from variation_batch.services.reference_data import (
    BreedCoatSelector,
    FormatSelector,
    ItemSelector,
    OutfitSelector,
    PromptContext,
)

logger = structlog.get_logger()

QUALITY_SUFFIX = (
    "Keep the composition, lighting and background of the source image. "
    "Photorealistic, high detail, no text, no watermark."
)


class GenerationError(Exception):
    """Raised when the generation backend rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def error_hint(self) -> str:
        """Short hint used to classify the failure for pacing."""
        if self.status_code is not None:
            return str(self.status_code)
        return str(self)


@dataclass
class GeneratedVariation:
    """An image produced for one batch item."""

    image_data: bytes
    mime_type: str
    prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)
    description: str | None = None


def _age_clause(target_age: str | None) -> str:
    return f" The animal should look like a {target_age}." if target_age else ""


def build_variation_prompt(context: PromptContext, selector: ItemSelector) -> str:
    """Build the instruction sent alongside the source image.

    Args:
        context: Job-wide prompt inputs
        selector: What this item should change

    Returns:
        Prompt text
    """
    if isinstance(selector, BreedCoatSelector):
        coat = selector.coat
        coat_desc = coat.name
        if coat.pattern_type:
            coat_desc += f" {coat.pattern_type}"
        if coat.hex_color:
            coat_desc += f" (colour {coat.hex_color})"
        change = (
            f"Replace the animal with a {selector.breed.name} "
            f"with a {coat_desc} coat, keeping the same pose."
        )
        if selector.breed.prompt_modifier:
            change += f" {selector.breed.prompt_modifier}"
    elif isinstance(selector, OutfitSelector):
        change = f"Dress the animal in {selector.outfit.name}."
        if selector.outfit.prompt_modifier:
            change += f" {selector.outfit.prompt_modifier}"
    elif isinstance(selector, FormatSelector):
        change = f"Re-compose the image as a {selector.format.name}."
        if selector.format.aspect_ratio:
            change += f" Use a {selector.format.aspect_ratio} aspect ratio."
        if selector.format.prompt_modifier:
            change += f" {selector.format.prompt_modifier}"
    else:
        raise TypeError(f"Unsupported selector: {selector!r}")

    parts = [change + _age_clause(context.target_age)]
    if context.original_prompt:
        parts.append(f"Original scene: {context.original_prompt}")
    if context.theme and context.theme.prompt_modifier:
        parts.append(f"Theme: {context.theme.prompt_modifier}")
    if context.style and context.style.prompt_modifier:
        parts.append(f"Style: {context.style.prompt_modifier}")
    parts.append(QUALITY_SUFFIX)
    return "\n".join(parts)


def build_variation_metadata(context: PromptContext, selector: ItemSelector) -> dict[str, Any]:
    """Catalog metadata recorded with the generated image."""
    metadata: dict[str, Any] = {
        "variation_type": selector.kind,
        "theme_id": context.theme.id if context.theme else None,
        "style_id": context.style.id if context.style else None,
        "format_id": context.format.id if context.format else None,
        "breed_id": context.breed.id if context.breed else None,
        "tags": ["batch-generated", "gemini-variation", selector.kind],
    }
    if isinstance(selector, BreedCoatSelector):
        metadata.update(breed_id=selector.breed.id, coat_id=selector.coat.id)
    elif isinstance(selector, OutfitSelector):
        metadata["outfit_id"] = selector.outfit.id
    elif isinstance(selector, FormatSelector):
        metadata["format_id"] = selector.format.id
    return metadata


def extract_inline_image(payload: dict[str, Any]) -> tuple[bytes, str] | None:
    """Return (image bytes, mime type) from a generateContent response, if any."""
    for candidate in payload.get("candidates", []):
        for part in candidate.get("content", {}).get("parts", []):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                return base64.b64decode(inline["data"]), mime_type
    return None


class GeminiVariationService:
    """Service for generating image variations with the Gemini API."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
    ) -> None:
        """Initialize with Gemini configuration."""
        self.api_key = api_key or settings.gemini_api_key
        self.api_url = (api_url or settings.gemini_api_url).rstrip("/")
        self.model = model or settings.gemini_model
        self.timeout = timeout or settings.gemini_timeout_seconds

    async def _post_generate_content(self, body: dict[str, Any]) -> dict[str, Any]:
        """Call generateContent and return the decoded JSON response."""
        if not self.api_key:
            raise GenerationError("Gemini API key not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/models/{self.model}:generateContent",
                    headers={"x-goog-api-key": self.api_key},
                    json=body,
                )
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result
        except httpx.TimeoutException as e:
            raise GenerationError(f"Gemini request timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise GenerationError(
                f"{status_code} {e.response.reason_phrase}: {e.response.text[:200]}",
                status_code=status_code,
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Gemini request failed: {e}") from e

    async def generate_variation(
        self,
        source_image: bytes,
        context: PromptContext,
        selector: ItemSelector,
        source_mime_type: str = "image/png",
    ) -> GeneratedVariation | None:
        """Generate one variation of the source image.

        Args:
            source_image: Source image bytes
            context: Job-wide prompt inputs
            selector: What this variation should change
            source_mime_type: MIME type of the source image

        Returns:
            The generated variation, or None if the model returned no image

        Raises:
            GenerationError: If the request fails
        """
        prompt = build_variation_prompt(context, selector)
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": source_mime_type,
                                "data": base64.b64encode(source_image).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

        logger.info("Requesting variation", model=self.model, variation_type=selector.kind)
        payload = await self._post_generate_content(body)

        image = extract_inline_image(payload)
        if image is None:
            logger.warning("Gemini returned no image", variation_type=selector.kind)
            return None

        image_data, mime_type = image
        logger.info(
            "Generated variation",
            variation_type=selector.kind,
            size=len(image_data),
        )
        return GeneratedVariation(
            image_data=image_data,
            mime_type=mime_type,
            prompt=prompt,
            metadata=build_variation_metadata(context, selector),
        )
