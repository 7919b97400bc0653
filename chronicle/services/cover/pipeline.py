"""Cover generation pipeline.

Orchestrates the complete cover generation process:

1. Concept distillation (text model, no title)
2. Image synthesis from the concept (image model)
3. Quality gate (vision model): rejected images are discarded and retried
4. Typography and layout (PIL, no AI)

Only stages 2-3 are retried, up to ``max_attempts`` times. A failure in
stage 1 or stage 4 propagates to the caller unchanged.
"""

import asyncio
import io
from dataclasses import dataclass

from PIL import Image

from chronicle.clients.protocols import ImageModel, TextModel, VisionModel
from chronicle.schemas.cover import Concept
from chronicle.services.cover.concept import ConceptInput, distill_concept
from chronicle.services.cover.prompt import build_image_prompt
from chronicle.services.cover.quality import QualityCheckResult, run_quality_checks
from chronicle.services.cover.typography import compose_cover, resize_to_cover
from chronicle.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_FAILURE_MESSAGE = "Failed to generate image after all attempts"


@dataclass
class CoverRequest:
    """Inputs for a new cover. ``title`` and ``author`` only reach typography."""

    summary: str
    genre: str
    title: str
    mood: str | None = None
    time_period: str | None = None
    author: str | None = None


@dataclass
class CoverResult:
    success: bool
    attempts: int
    cover_bytes: bytes | None = None
    asset_bytes: bytes | None = None
    concept: Concept | None = None
    quality: QualityCheckResult | None = None
    error: str | None = None


@dataclass
class ImageAssetResult:
    success: bool
    attempts: int
    image_bytes: bytes | None = None
    quality: QualityCheckResult | None = None
    error: str | None = None


def _resize_png(image_bytes: bytes) -> bytes:
    with Image.open(io.BytesIO(image_bytes)) as source:
        resized = resize_to_cover(source.convert("RGB"))
    output = io.BytesIO()
    resized.save(output, format="PNG")
    return output.getvalue()


class CoverPipeline:
    """Quality-gated cover generation.

    Args:
        text_model: Concept distillation collaborator.
        image_model: Image synthesis collaborator.
        vision_model: Quality check collaborator.
        max_attempts: Image attempts before giving up (default 3).
    """

    def __init__(
        self,
        text_model: TextModel,
        image_model: ImageModel,
        vision_model: VisionModel,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.text_model = text_model
        self.image_model = image_model
        self.vision_model = vision_model
        self.max_attempts = max_attempts

    async def generate_image_asset(self, concept: Concept) -> ImageAssetResult:
        """Run image synthesis and the quality gate until an image passes.

        Each attempt varies composition hints only. A collaborator error
        counts as a failed attempt; the last failure reason is reported
        when every attempt is used up.
        """
        last_error: str | None = None
        attempts = 0

        for attempt in range(self.max_attempts):
            attempts = attempt + 1
            log.info("cover_image_attempt_started", attempt=attempts)

            try:
                image_bytes = await self.image_model.generate_image(
                    build_image_prompt(concept, attempt=attempt)
                )
            except Exception as e:
                last_error = str(e) or type(e).__name__
                log.warning(
                    "cover_image_generation_failed",
                    attempt=attempts,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                continue

            quality = await run_quality_checks(self.vision_model, image_bytes)
            if not quality.passed:
                last_error = quality.reason
                log.warning("cover_quality_gate_rejected", attempt=attempts, reason=quality.reason)
                continue

            log.info("cover_image_passed_quality_gate", attempt=attempts)
            return ImageAssetResult(
                success=True,
                attempts=attempts,
                image_bytes=image_bytes,
                quality=quality,
            )

        return ImageAssetResult(
            success=False,
            attempts=attempts,
            error=last_error or DEFAULT_FAILURE_MESSAGE,
        )

    async def _compose(
        self,
        concept: Concept,
        asset: ImageAssetResult,
        title: str,
        author: str | None,
        genre: str,
    ) -> CoverResult:
        if asset.image_bytes is None:
            raise ValueError("Cannot compose a cover without image bytes")
        cover_bytes = await asyncio.to_thread(compose_cover, asset.image_bytes, title, author, genre)
        asset_bytes = await asyncio.to_thread(_resize_png, asset.image_bytes)

        log.info("cover_pipeline_completed", attempts=asset.attempts)
        return CoverResult(
            success=True,
            attempts=asset.attempts,
            cover_bytes=cover_bytes,
            asset_bytes=asset_bytes,
            concept=concept,
            quality=asset.quality,
        )

    async def generate_cover(self, request: CoverRequest) -> CoverResult:
        """Generate a complete cover from story facts.

        Returns:
            CoverResult with success=False and the last rejection reason when
            no image passes the quality gate.

        Raises:
            LLMResponseParseError: If concept distillation returns unusable output.
            Exception: Any concept-collaborator or typography failure.
        """
        log.info("cover_pipeline_started", genre=request.genre, title_length=len(request.title))

        concept = await distill_concept(
            self.text_model,
            ConceptInput(
                summary=request.summary,
                genre=request.genre,
                mood=request.mood,
                time_period=request.time_period,
            ),
        )

        asset = await self.generate_image_asset(concept)
        if not asset.success:
            return CoverResult(
                success=False,
                attempts=asset.attempts,
                concept=concept,
                error=asset.error,
            )

        return await self._compose(concept, asset, request.title, request.author, request.genre)

    async def regenerate_cover(
        self,
        concept: Concept,
        title: str,
        author: str | None,
        genre: str,
    ) -> CoverResult:
        """New image for a stored concept; skips concept distillation."""
        asset = await self.generate_image_asset(concept)
        if not asset.success:
            return CoverResult(
                success=False,
                attempts=asset.attempts,
                concept=concept,
                error=asset.error,
            )

        return await self._compose(concept, asset, title, author, genre)
