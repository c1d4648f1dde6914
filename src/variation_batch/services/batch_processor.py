"""Batch job processor and worker loop.

A job is processed by one worker, one item at a time, in ``item_index``
order. Item failures are recorded on the item and never stop the job.
Anything that goes wrong outside an item (loading the job, its source
image or the reference data, or the database itself) fails the job.

Cancellation is cooperative: the job status is re-read before each item,
so a cancel request takes effect after at most one item plus the
inter-item pause.
"""

import asyncio
import time
from typing import Protocol

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from variation_batch.core.config import settings
from variation_batch.crud import batch_job as batch_crud
from variation_batch.crud.catalog import create_catalog_image, get_catalog_image
from variation_batch.models.batch_job import BatchItemStatus, BatchJobItem, BatchJobStatus
from variation_batch.models.catalog import CatalogImage
from variation_batch.models.job_config import BatchJobConfig
from variation_batch.services.description import (
    ImageDescriptionService,
    default_description,
    subject_for,
)
from variation_batch.services.gemini import (
    GeminiVariationService,
    GeneratedVariation,
    GenerationError,
)
from variation_batch.services.reference_data import (
    ItemSelector,
    PromptContext,
    ReferenceData,
    SelectorResolutionError,
    build_prompt_context,
    load_reference_data,
    resolve_item_selector,
)
from variation_batch.services.speed_controller import (
    AdaptiveSpeedController,
    SpeedControllerConfig,
    SpeedRecommendation,
)
from variation_batch.services.storage import StorageService, variation_object_path

logger = structlog.get_logger()

NO_RESULT_ERROR = "Failed to generate variation"


class BatchJobError(Exception):
    """Raised for job-level failures."""


class VariationGenerator(Protocol):
    async def generate_variation(
        self,
        source_image: bytes,
        context: PromptContext,
        selector: ItemSelector,
        source_mime_type: str = ...,
    ) -> GeneratedVariation | None: ...


class ImageDescriber(Protocol):
    async def describe(
        self,
        image_data: bytes,
        subject_name: str | None = ...,
        personality_traits: list[str] | None = ...,
        mime_type: str = ...,
    ) -> str: ...


class AssetStorage(Protocol):
    async def upload_image(
        self, object_path: str, image_data: bytes, content_type: str = ...
    ) -> str: ...

    async def get_image(self, object_path: str) -> bytes | None: ...

    def get_public_url(self, object_path: str) -> str: ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class BatchProcessingService:
    """Drives a batch job from pending to a terminal state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: VariationGenerator | None = None,
        describer: ImageDescriber | None = None,
        storage: AssetStorage | None = None,
        controller: AdaptiveSpeedController | None = None,
        item_delay_seconds: float | None = None,
        pacing_mode: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.generator = generator or GeminiVariationService()
        self.describer = describer or ImageDescriptionService()
        self.storage = storage or StorageService()
        self.controller = controller or AdaptiveSpeedController(
            SpeedControllerConfig.from_settings(settings)
        )
        self.item_delay_seconds = (
            item_delay_seconds
            if item_delay_seconds is not None
            else settings.batch_item_delay_seconds
        )
        self.pacing_mode = pacing_mode or settings.batch_pacing_mode

    async def process_batch_job(self, job_id: int) -> None:
        """Process every pending item of a job.

        Job-level errors are recorded on the job. Errors raised while
        recording them are logged, so only task cancellation propagates.

        Args:
            job_id: ID of the job to process
        """
        self.controller.reset()

        async with self.session_factory() as session:
            try:
                if not await batch_crud.mark_job_running(session, job_id):
                    logger.warning("Batch job is not pending, skipping", job_id=job_id)
                    return

                logger.info("Batch job started", job_id=job_id, pacing_mode=self.pacing_mode)
                await self._run(session, job_id)
            except Exception as e:
                logger.exception("Batch job failed", job_id=job_id)
                await self._record_job_failure(session, job_id, str(e) or type(e).__name__)

    async def _record_job_failure(self, session: AsyncSession, job_id: int, error: str) -> None:
        try:
            await session.rollback()
            await batch_crud.mark_job_failed(session, job_id, error)
        except Exception:
            logger.exception("Could not record job failure", job_id=job_id, error=error)

    async def _run(self, session: AsyncSession, job_id: int) -> None:
        job = await batch_crud.get_job(session, job_id)
        if job is None:
            raise BatchJobError("Job not found")

        config = BatchJobConfig.model_validate(job.config)

        source = await get_catalog_image(session, job.original_image_id)
        if source is None:
            raise BatchJobError("Original image not found")
        source_image = await self._load_source_image(source)

        reference = await load_reference_data(session)
        context = build_prompt_context(config, reference, job.target_age)

        items = await batch_crud.list_pending_items(session, job_id)
        if not items:
            logger.info("No pending items found", job_id=job_id)
            await batch_crud.mark_job_completed(session, job_id)
            return

        logger.info("Processing items sequentially", job_id=job_id, items=len(items))

        for position, item in enumerate(items, start=1):
            status = await batch_crud.get_job_status(session, job_id)
            if status == BatchJobStatus.CANCELLED.value:
                logger.info(
                    "Batch job was cancelled, stopping",
                    job_id=job_id,
                    remaining=len(items) - position + 1,
                )
                return

            logger.info(
                "Processing item",
                job_id=job_id,
                item_id=item.id,
                item_index=item.item_index,
                position=position,
                total=len(items),
            )
            recommendation = await self._process_item(
                session, job_id, item, source_image, source.mime_type, context, reference
            )

            progress = await batch_crud.refresh_job_progress(session, job_id)
            logger.info("Job progress updated", job_id=job_id, **progress)

            if position < len(items):
                pause = self._pause_seconds(recommendation)
                logger.debug("Waiting before next item", job_id=job_id, seconds=pause)
                await asyncio.sleep(pause)

        await batch_crud.mark_job_completed(session, job_id)
        logger.info("Batch job complete", job_id=job_id)

    async def _process_item(
        self,
        session: AsyncSession,
        job_id: int,
        item: BatchJobItem,
        source_image: bytes,
        source_mime_type: str,
        context: PromptContext,
        reference: ReferenceData,
    ) -> SpeedRecommendation | None:
        """Run one item to a terminal state.

        Returns:
            The pacing recommendation taken after the generation call, if one
            was made
        """
        item_started = time.monotonic()
        if not await batch_crud.claim_item(session, item.id):
            logger.warning("Item is no longer pending, skipping", job_id=job_id, item_id=item.id)
            return None

        try:
            selector = resolve_item_selector(item, reference)
        except SelectorResolutionError as e:
            await self._fail_item(session, item, str(e), item_started)
            return None

        generation_started = time.monotonic()
        try:
            variation = await self.generator.generate_variation(
                source_image, context, selector, source_mime_type
            )
        except Exception as e:
            gemini_ms = _elapsed_ms(generation_started)
            hint = e.error_hint if isinstance(e, GenerationError) else str(e) or type(e).__name__
            self.controller.record_result(False, gemini_ms, hint)
            recommendation = self.controller.get_speed_recommendation()
            await self._fail_item(
                session,
                item,
                str(e) or type(e).__name__,
                item_started,
                gemini_duration_ms=gemini_ms,
            )
            return recommendation

        gemini_ms = _elapsed_ms(generation_started)
        if variation is None:
            self.controller.record_result(False, gemini_ms, "no_result")
            recommendation = self.controller.get_speed_recommendation()
            await self._fail_item(
                session, item, NO_RESULT_ERROR, item_started, gemini_duration_ms=gemini_ms
            )
            return recommendation

        self.controller.record_result(True, gemini_ms)
        recommendation = self.controller.get_speed_recommendation()

        await self._describe(variation, selector)

        try:
            image_id = await self._save_variation(job_id, item, variation)
        except Exception as e:
            logger.exception("Failed to save generated image", job_id=job_id, item_id=item.id)
            await self._fail_item(
                session,
                item,
                f"Failed to save generated image: {e}",
                item_started,
                gemini_duration_ms=gemini_ms,
            )
            return recommendation

        await batch_crud.finish_item(
            session,
            item.id,
            BatchItemStatus.COMPLETED,
            generated_image_id=image_id,
            gemini_duration_ms=gemini_ms,
            total_duration_ms=_elapsed_ms(item_started),
        )
        logger.info(
            "Item succeeded",
            job_id=job_id,
            item_id=item.id,
            image_id=image_id,
            gemini_duration_ms=gemini_ms,
        )
        return recommendation

    async def _fail_item(
        self,
        session: AsyncSession,
        item: BatchJobItem,
        error: str,
        item_started: float,
        gemini_duration_ms: int | None = None,
    ) -> None:
        await batch_crud.finish_item(
            session,
            item.id,
            BatchItemStatus.FAILED,
            error_message=error,
            gemini_duration_ms=gemini_duration_ms,
            total_duration_ms=_elapsed_ms(item_started),
        )
        logger.warning("Item failed", job_id=item.job_id, item_id=item.id, error=error)

    async def _describe(self, variation: GeneratedVariation, selector: ItemSelector) -> None:
        """Attach a description, falling back to a default on any failure."""
        subject, traits = subject_for(selector)
        try:
            variation.description = await self.describer.describe(
                variation.image_data, subject, traits, variation.mime_type
            )
        except Exception as e:
            logger.warning("Description generation failed, using default", error=str(e))
            variation.description = default_description(selector)

    async def _save_variation(
        self,
        job_id: int,
        item: BatchJobItem,
        variation: GeneratedVariation,
    ) -> int:
        """Upload the image, then record it in the catalog.

        The catalog row is written in its own session so a failed insert
        cannot poison the session driving the job.
        """
        object_path = variation_object_path(job_id, item.item_index, variation.mime_type)
        await self.storage.upload_image(object_path, variation.image_data, variation.mime_type)

        metadata = variation.metadata
        async with self.session_factory() as save_session:
            image = await create_catalog_image(
                save_session,
                filename=object_path.rsplit("/", 1)[-1],
                mime_type=variation.mime_type,
                file_size=len(variation.image_data),
                storage_path=object_path,
                public_url=self.storage.get_public_url(object_path),
                prompt_text=variation.prompt,
                description=variation.description,
                tags=metadata.get("tags"),
                extra={"job_id": job_id, "item_index": item.item_index},
                breed_id=metadata.get("breed_id"),
                coat_id=metadata.get("coat_id"),
                outfit_id=metadata.get("outfit_id"),
                theme_id=metadata.get("theme_id"),
                style_id=metadata.get("style_id"),
                format_id=metadata.get("format_id"),
            )
            return image.id

    async def _load_source_image(self, source: CatalogImage) -> bytes:
        if source.storage_path:
            data = await self.storage.get_image(source.storage_path)
            if data is not None:
                return data
        if source.public_url:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(source.public_url)
                response.raise_for_status()
                return response.content
        raise BatchJobError(f"Source image {source.id} has no retrievable data")

    def _pause_seconds(self, recommendation: SpeedRecommendation | None) -> float:
        """Pause before the next item under the configured pacing mode."""
        if self.pacing_mode == "adaptive" and recommendation is not None:
            return recommendation.delay_ms / 1000
        return self.item_delay_seconds


async def run_worker(
    session_factory: async_sessionmaker[AsyncSession],
    stop_event: asyncio.Event | None = None,
    poll_interval: float | None = None,
    processor: BatchProcessingService | None = None,
) -> None:
    """Run the batch job worker.

    Requeues jobs a previous worker left running, then picks up pending
    jobs oldest first and processes them one at a time.

    Args:
        session_factory: Factory for creating database sessions
        stop_event: Optional event to signal worker shutdown
        poll_interval: Optional poll interval override
        processor: Optional processor override
    """
    interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
    processor = processor or BatchProcessingService(session_factory)
    logger.info("Starting batch job worker")

    try:
        async with session_factory() as session:
            await batch_crud.requeue_interrupted_jobs(session)
    except Exception:
        logger.exception("Failed to requeue interrupted jobs")

    while True:
        if stop_event and stop_event.is_set():
            logger.info("Worker shutdown requested")
            break

        try:
            async with session_factory() as session:
                job = await batch_crud.get_next_pending_job(session)
                job_id = job.id if job else None

            if job_id is not None:
                await processor.process_batch_job(job_id)
            else:
                await asyncio.sleep(interval)

        except asyncio.CancelledError:
            logger.info("Worker cancelled")
            break
        except Exception:
            logger.exception("Error in batch job worker, continuing...")
            await asyncio.sleep(interval)
