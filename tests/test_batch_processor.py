"""Tests for the batch processor and worker loop."""

import asyncio
import contextlib
from unittest.mock import patch

import httpx
import pytest
import respx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tests.conftest import (
    SOURCE_IMAGE_BYTES,
    FakeDescriber,
    FakeGenerator,
    FakeStorage,
    SeedData,
    make_config,
)
from variation_batch.crud import batch_job as batch_crud
from variation_batch.models.batch_job import BatchItemStatus, BatchJob, BatchJobStatus
from variation_batch.models.catalog import CatalogImage
from variation_batch.services import batch_processor
from variation_batch.services.batch_processor import NO_RESULT_ERROR, BatchProcessingService
from variation_batch.services.gemini import GenerationError
from variation_batch.services.reference_data import BreedCoatSelector
from variation_batch.services.speed_controller import (
    AdaptiveSpeedController,
    AdjustmentType,
    SpeedRecommendation,
)


def make_processor(
    session_factory: async_sessionmaker[AsyncSession],
    generator: FakeGenerator,
    describer: FakeDescriber | None = None,
    storage: FakeStorage | None = None,
    **kwargs: object,
) -> BatchProcessingService:
    return BatchProcessingService(
        session_factory,
        generator=generator,
        describer=describer or FakeDescriber(),
        storage=storage or FakeStorage(),
        item_delay_seconds=0,
        **kwargs,
    )


async def load_job(
    session_factory: async_sessionmaker[AsyncSession], job_id: int
) -> tuple[BatchJob, list]:
    async with session_factory() as session:
        job = await batch_crud.get_job(session, job_id)
        assert job is not None
        items = await batch_crud.get_job_items(session, job_id)
        return job, items


class TestProcessBatchJob:
    """Tests for BatchProcessingService.process_batch_job."""

    async def test_item_failure_does_not_stop_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
    ) -> None:
        """A failed generation fails only its item."""
        generator = FakeGenerator(
            failures={2: GenerationError("500 Internal Server Error", status_code=500)}
        )
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.total_items == 4
        assert job.completed_items == 4
        assert job.successful_items == 3
        assert job.failed_items == 1
        assert [item.status for item in items] == [
            BatchItemStatus.COMPLETED.value,
            BatchItemStatus.FAILED.value,
            BatchItemStatus.COMPLETED.value,
            BatchItemStatus.COMPLETED.value,
        ]
        assert items[1].error_message == "500 Internal Server Error"
        assert items[1].generated_image_id is None
        assert items[1].gemini_duration_ms is not None
        assert items[0].generated_image_id is not None

        # The server error reached the controller
        assert len(processor.controller.window) == 4
        assert processor.controller.get_metrics().server_errors == 1

    async def test_counters_consistent_while_running(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
    ) -> None:
        """Stored counters match item outcomes before every item."""
        snapshots: list[tuple[int, int, int, int]] = []

        async def read_counters(call_number: int) -> None:
            async with session_factory() as session:
                job = await batch_crud.get_job(session, four_item_job.id)
                assert job is not None
                snapshots.append(
                    (job.completed_items, job.successful_items, job.failed_items, job.total_items)
                )

        generator = FakeGenerator(
            failures={2: GenerationError("429 Too Many Requests", status_code=429)},
            on_call=read_counters,
        )
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        assert snapshots == [(0, 0, 0, 4), (1, 1, 0, 4), (2, 1, 1, 4), (3, 2, 1, 4)]
        for completed, successful, failed, total in snapshots:
            assert completed == successful + failed <= total

    async def test_items_processed_in_index_order(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
        seed: SeedData,
    ) -> None:
        """Items run one at a time in item_index order."""
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        assert all(isinstance(call, BreedCoatSelector) for call in generator.calls)
        pairs = [(call.breed.id, call.coat.id) for call in generator.calls]
        assert pairs == [
            (seed.labrador, seed.black),
            (seed.labrador, seed.cream),
            (seed.poodle, seed.black),
            (seed.poodle, seed.cream),
        ]
        assert generator.sources == [SOURCE_IMAGE_BYTES] * 4

    async def test_generated_images_are_catalogued(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
        storage: FakeStorage,
        seed: SeedData,
    ) -> None:
        """Each success uploads an object and inserts a catalog row."""
        processor = make_processor(session_factory, generator, storage=storage)

        await processor.process_batch_job(four_item_job.id)

        _, items = await load_job(session_factory, four_item_job.id)
        async with session_factory() as session:
            image = await session.get(CatalogImage, items[0].generated_image_id)

        assert image is not None
        assert image.storage_path in storage.objects
        assert storage.objects[image.storage_path] == b"generated-1"
        assert image.storage_path.startswith(f"variations/{four_item_job.id}/0000-")
        assert image.breed_id == seed.labrador
        assert image.coat_id == seed.black
        assert image.theme_id == seed.theme
        assert image.description == "A lovely Labrador"
        assert "batch-generated" in (image.tags or [])
        assert image.extra == {"job_id": four_item_job.id, "item_index": 0}

    async def test_cancellation_stops_before_next_item(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
    ) -> None:
        """Cancelling mid-run lets the current item finish and stops there."""

        async def cancel_on_second_call(call_number: int) -> None:
            if call_number == 2:
                async with session_factory() as session:
                    await batch_crud.cancel_job(session, four_item_job.id)

        generator = FakeGenerator(on_call=cancel_on_second_call)
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        job, items = await load_job(session_factory, four_item_job.id)
        assert len(generator.calls) == 2
        assert job.status == BatchJobStatus.CANCELLED.value
        assert [item.status for item in items] == [
            BatchItemStatus.COMPLETED.value,
            BatchItemStatus.COMPLETED.value,
            BatchItemStatus.PENDING.value,
            BatchItemStatus.PENDING.value,
        ]
        assert job.completed_items == job.successful_items + job.failed_items == 2

    async def test_job_without_pending_items_completes(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """A job whose items already finished completes without calls."""
        async with session_factory() as session:
            for item in await batch_crud.get_job_items(session, four_item_job.id):
                await batch_crud.claim_item(session, item.id)
                await batch_crud.finish_item(session, item.id, BatchItemStatus.COMPLETED)

        processor = make_processor(session_factory, generator)
        await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert generator.calls == []

    async def test_resumes_only_pending_items(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Items already finished are not generated again."""
        async with session_factory() as session:
            items = await batch_crud.get_job_items(session, four_item_job.id)
            await batch_crud.claim_item(session, items[0].id)
            await batch_crud.finish_item(session, items[0].id, BatchItemStatus.COMPLETED)

        processor = make_processor(session_factory, generator)
        await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert len(generator.calls) == 3
        assert job.completed_items == 4

    async def test_missing_source_image_fails_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        seed: SeedData,
        generator: FakeGenerator,
    ) -> None:
        """A job whose source image is gone fails with a logged error."""
        async with session_factory() as session:
            job = await batch_crud.create_batch_job(session, seed.source_image, make_config(seed))
            source = await session.get(CatalogImage, seed.source_image)
            await session.delete(source)
            await session.commit()

        processor = make_processor(session_factory, generator)
        await processor.process_batch_job(job.id)

        failed, items = await load_job(session_factory, job.id)
        assert failed.status == BatchJobStatus.FAILED.value
        assert failed.error_log == ["Original image not found"]
        assert failed.completed_at is not None
        assert all(item.status == BatchItemStatus.PENDING.value for item in items)
        assert generator.calls == []

    async def test_reference_data_failure_fails_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Errors outside an item fail the whole job."""
        processor = make_processor(session_factory, generator)

        with patch(
            "variation_batch.services.batch_processor.load_reference_data",
            side_effect=RuntimeError("Reference data unavailable"),
        ):
            await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.FAILED.value
        assert job.error_log == ["Reference data unavailable"]
        assert generator.calls == []

    async def test_error_while_starting_fails_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """A database error on the first transition is recorded, not raised."""
        processor = make_processor(session_factory, generator)

        with patch(
            "variation_batch.crud.batch_job.mark_job_running",
            side_effect=RuntimeError("connection lost"),
        ):
            await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.FAILED.value
        assert job.error_log == ["connection lost"]
        assert generator.calls == []

    async def test_error_while_recording_failure_is_logged(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """process_batch_job returns even when the failure cannot be stored."""
        processor = make_processor(session_factory, generator)

        with (
            patch(
                "variation_batch.services.batch_processor.load_reference_data",
                side_effect=RuntimeError("Reference data unavailable"),
            ),
            patch(
                "variation_batch.crud.batch_job.mark_job_failed",
                side_effect=RuntimeError("database went away"),
            ),
        ):
            await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.RUNNING.value
        assert job.error_log is None

    async def test_unreadable_source_image_fails_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Without stored bytes or a public URL the job fails."""
        storage = FakeStorage()
        storage.objects.clear()
        processor = make_processor(session_factory, generator, storage=storage)

        await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.FAILED.value
        assert job.error_log is not None
        assert "no retrievable data" in job.error_log[0]

    @respx.mock
    async def test_source_image_downloaded_from_public_url(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
        seed: SeedData,
    ) -> None:
        """Sources missing from storage are fetched from their public URL."""
        async with session_factory() as session:
            source = await session.get(CatalogImage, seed.source_image)
            assert source is not None
            source.storage_path = None
            source.public_url = "https://cdn.test.local/original.png"
            await session.commit()
        respx.get("https://cdn.test.local/original.png").mock(
            return_value=httpx.Response(200, content=b"downloaded")
        )
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert generator.sources == [b"downloaded"] * 4

    async def test_description_failure_uses_default(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """A failing description service does not fail the item."""
        processor = make_processor(session_factory, generator, describer=FakeDescriber(fail=True))

        await processor.process_batch_job(four_item_job.id)

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.successful_items == 4
        async with session_factory() as session:
            image = await session.get(CatalogImage, items[0].generated_image_id)
        assert image is not None
        assert image.description == "Generated Labrador with Black coat"

    async def test_storage_failure_fails_item(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Upload errors fail the item and the job carries on."""
        processor = make_processor(
            session_factory, generator, storage=FakeStorage(fail_uploads=True)
        )

        await processor.process_batch_job(four_item_job.id)

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert job.failed_items == 4
        assert len(generator.calls) == 4
        assert items[0].error_message == "Failed to save generated image: storage unavailable"

    async def test_empty_result_fails_item(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
    ) -> None:
        """A response without an image fails the item."""
        generator = FakeGenerator(empty={3})
        processor = make_processor(session_factory, generator)

        await processor.process_batch_job(four_item_job.id)

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.successful_items == 3
        assert items[2].status == BatchItemStatus.FAILED.value
        assert items[2].error_message == NO_RESULT_ERROR

    async def test_unknown_selector_fails_item(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        seed: SeedData,
        generator: FakeGenerator,
    ) -> None:
        """Items referencing missing reference rows fail without a call."""
        config = make_config(seed, breedCoats=[], outfits=[seed.raincoat, 999])
        async with session_factory() as session:
            job = await batch_crud.create_batch_job(session, seed.source_image, config)

        processor = make_processor(session_factory, generator)
        await processor.process_batch_job(job.id)

        finished, items = await load_job(session_factory, job.id)
        assert finished.status == BatchJobStatus.COMPLETED.value
        assert len(generator.calls) == 1
        assert items[1].status == BatchItemStatus.FAILED.value
        assert items[1].error_message == "Outfit 999 not found"

    async def test_cancelled_job_is_not_started(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Only pending jobs are picked up."""
        async with session_factory() as session:
            await batch_crud.cancel_job(session, four_item_job.id)

        processor = make_processor(session_factory, generator)
        await processor.process_batch_job(four_item_job.id)

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.CANCELLED.value
        assert job.started_at is None
        assert generator.calls == []

    async def test_controller_reset_per_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Each run starts from a fresh controller window."""
        controller = AdaptiveSpeedController()
        for _ in range(5):
            controller.record_result(False, 1000, "429")
        processor = make_processor(session_factory, generator, controller=controller)

        await processor.process_batch_job(four_item_job.id)

        assert len(controller.window) == 4
        assert controller.get_metrics().rate_limit_hits == 0


class TestPacing:
    """Tests for the pause between items."""

    @pytest.fixture
    def recommendation(self) -> SpeedRecommendation:
        return SpeedRecommendation(
            delay_ms=2500,
            parallelism=1,
            reasoning="Mild slowdown",
            confidence=0.7,
            adjustment_type=AdjustmentType.SLOW_DOWN,
        )

    def test_fixed_pacing(
        self, session_factory: async_sessionmaker[AsyncSession], recommendation: SpeedRecommendation
    ) -> None:
        """Fixed mode ignores the recommendation."""
        processor = BatchProcessingService(
            session_factory,
            generator=FakeGenerator(),
            describer=FakeDescriber(),
            storage=FakeStorage(),
            item_delay_seconds=3.0,
            pacing_mode="fixed",
        )

        assert processor._pause_seconds(recommendation) == 3.0

    def test_adaptive_pacing(
        self, session_factory: async_sessionmaker[AsyncSession], recommendation: SpeedRecommendation
    ) -> None:
        """Adaptive mode sleeps the recommended delay."""
        processor = BatchProcessingService(
            session_factory,
            generator=FakeGenerator(),
            describer=FakeDescriber(),
            storage=FakeStorage(),
            item_delay_seconds=3.0,
            pacing_mode="adaptive",
        )

        assert processor._pause_seconds(recommendation) == 2.5
        assert processor._pause_seconds(None) == 3.0


class TestRunWorker:
    """Tests for run_worker function."""

    async def test_worker_processes_job(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """Should process pending jobs."""
        processor = make_processor(session_factory, generator)
        stop_event = asyncio.Event()

        async def stop_after_processing() -> None:
            await asyncio.sleep(0.5)
            stop_event.set()

        await asyncio.gather(
            batch_processor.run_worker(
                session_factory, stop_event, poll_interval=0.05, processor=processor
            ),
            stop_after_processing(),
        )

        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert len(generator.calls) == 4

    async def test_worker_picks_oldest_job_first(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        seed: SeedData,
        generator: FakeGenerator,
    ) -> None:
        """Jobs are processed in creation order."""
        async with session_factory() as session:
            first = await batch_crud.create_batch_job(session, seed.source_image, make_config(seed))
            second = await batch_crud.create_batch_job(
                session, seed.source_image, make_config(seed)
            )

        processor = make_processor(session_factory, generator)
        stop_event = asyncio.Event()
        processed: list[int] = []
        original = processor.process_batch_job

        async def record(job_id: int) -> None:
            processed.append(job_id)
            await original(job_id)
            if len(processed) == 2:
                stop_event.set()

        processor.process_batch_job = record  # type: ignore[method-assign]

        await asyncio.wait_for(
            batch_processor.run_worker(
                session_factory, stop_event, poll_interval=0.05, processor=processor
            ),
            timeout=5.0,
        )

        assert processed == [first.id, second.id]

    async def test_worker_survives_errors(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
        generator: FakeGenerator,
    ) -> None:
        """An unexpected error is logged and the loop keeps polling."""
        processor = make_processor(session_factory, generator)
        stop_event = asyncio.Event()
        attempts: list[int] = []
        original = processor.process_batch_job

        async def flaky(job_id: int) -> None:
            attempts.append(job_id)
            if len(attempts) == 1:
                raise RuntimeError("database went away")
            await original(job_id)
            stop_event.set()

        processor.process_batch_job = flaky  # type: ignore[method-assign]

        await asyncio.wait_for(
            batch_processor.run_worker(
                session_factory, stop_event, poll_interval=0.05, processor=processor
            ),
            timeout=5.0,
        )

        assert attempts == [four_item_job.id, four_item_job.id]
        job, _ = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value

    async def test_interrupted_job_resumes_after_restart(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        four_item_job: BatchJob,
    ) -> None:
        """A job cut off mid-item is finished by the next worker."""
        reached_second_item = asyncio.Event()

        async def hang_on_second_item(call_number: int) -> None:
            if call_number == 2:
                reached_second_item.set()
                await asyncio.Event().wait()

        interrupted = make_processor(session_factory, FakeGenerator(on_call=hang_on_second_item))
        first_run = asyncio.create_task(interrupted.process_batch_job(four_item_job.id))
        await asyncio.wait_for(reached_second_item.wait(), timeout=5.0)
        first_run.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await first_run

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.RUNNING.value
        assert [item.status for item in items][:2] == [
            BatchItemStatus.COMPLETED.value,
            BatchItemStatus.RUNNING.value,
        ]

        generator = FakeGenerator()
        processor = make_processor(session_factory, generator)
        stop_event = asyncio.Event()
        original = processor.process_batch_job

        async def process_then_stop(job_id: int) -> None:
            await original(job_id)
            stop_event.set()

        processor.process_batch_job = process_then_stop  # type: ignore[method-assign]

        await asyncio.wait_for(
            batch_processor.run_worker(
                session_factory, stop_event, poll_interval=0.05, processor=processor
            ),
            timeout=5.0,
        )

        job, items = await load_job(session_factory, four_item_job.id)
        assert job.status == BatchJobStatus.COMPLETED.value
        assert all(item.status == BatchItemStatus.COMPLETED.value for item in items)
        assert len(generator.calls) == 3
        assert (job.completed_items, job.successful_items, job.failed_items) == (4, 4, 0)

    async def test_worker_stops_on_event(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        """Should stop when stop event is set."""
        stop_event = asyncio.Event()
        stop_event.set()

        # Should exit immediately
        await asyncio.wait_for(
            batch_processor.run_worker(
                session_factory,
                stop_event,
                poll_interval=0.1,
                processor=make_processor(session_factory, FakeGenerator()),
            ),
            timeout=1.0,
        )
