"""Persistence for batch jobs and their items.

Every write commits immediately so job progress is durable after each step.
Job status changes go through ``transition_job``, which never moves a job
out of a terminal state, and item changes go through ``claim_item`` /
``finish_item``, which never touch an item that already finished.
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from variation_batch.models.batch_job import (
    TERMINAL_ITEM_STATUSES,
    TERMINAL_JOB_STATUSES,
    BatchItemStatus,
    BatchJob,
    BatchJobItem,
    BatchJobStatus,
)
from variation_batch.models.job_config import BatchJobConfig

logger = structlog.get_logger()


class JobNotCancellableError(Exception):
    """Raised when cancelling a job that already finished or was cancelled."""


def _now() -> datetime:
    return datetime.now(UTC)


async def create_batch_job(
    session: AsyncSession,
    original_image_id: int,
    config: BatchJobConfig,
    target_age: str | None = None,
) -> BatchJob:
    """Create a pending job and one pending item per requested variation.

    Items are ordered breed-coat pairs first, then outfits, then formats.

    Args:
        session: Database session
        original_image_id: Catalog id of the source image
        config: Job configuration
        target_age: Optional age the generated animals should look

    Returns:
        The created job

    Raises:
        ValueError: If the config requests no variations
    """
    variations = config.variation_config
    if variations.item_count == 0:
        raise ValueError("No variations specified")

    selectors: list[dict[str, int]] = [
        {"breed_id": pair.breed_id, "coat_id": pair.coat_id} for pair in variations.breed_coats
    ]
    selectors.extend({"outfit_id": outfit_id} for outfit_id in variations.outfits)
    selectors.extend({"format_id": format_id} for format_id in variations.formats)

    job = BatchJob(
        original_image_id=original_image_id,
        config=config.model_dump(mode="json", by_alias=True),
        target_age=target_age,
        status=BatchJobStatus.PENDING.value,
        total_items=len(selectors),
        items=[
            BatchJobItem(item_index=index, status=BatchItemStatus.PENDING.value, **selector)
            for index, selector in enumerate(selectors)
        ],
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)

    logger.info("Created batch job", job_id=job.id, total_items=job.total_items)
    return job


async def get_job(session: AsyncSession, job_id: int) -> BatchJob | None:
    """Get a job by id, reloading it from the database."""
    result = await session.execute(
        select(BatchJob).where(BatchJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_job_status(session: AsyncSession, job_id: int) -> str | None:
    """Read only the current status of a job."""
    result = await session.execute(select(BatchJob.status).where(BatchJob.id == job_id))
    return result.scalar_one_or_none()


async def list_jobs(session: AsyncSession, limit: int = 50) -> list[BatchJob]:
    """Most recent jobs first."""
    result = await session.execute(
        select(BatchJob).order_by(BatchJob.created_at.desc(), BatchJob.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def get_next_pending_job(session: AsyncSession) -> BatchJob | None:
    """Get the oldest pending job (FIFO)."""
    result = await session.execute(
        select(BatchJob)
        .where(BatchJob.status == BatchJobStatus.PENDING.value)
        .order_by(BatchJob.created_at, BatchJob.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_job(session: AsyncSession, job_id: int, **values: Any) -> None:
    """Apply a partial update to a job."""
    await session.execute(update(BatchJob).where(BatchJob.id == job_id).values(**values))
    await session.commit()


async def transition_job(
    session: AsyncSession,
    job_id: int,
    status: BatchJobStatus,
    from_statuses: set[str] | None = None,
    **values: Any,
) -> bool:
    """Move a job to a new status unless it already reached a terminal one.

    Args:
        session: Database session
        job_id: ID of the job
        status: New status
        from_statuses: Restrict the transition to these current statuses
        **values: Extra columns to set alongside the status

    Returns:
        True if the job was updated
    """
    stmt = update(BatchJob).where(BatchJob.id == job_id)
    if from_statuses is not None:
        stmt = stmt.where(BatchJob.status.in_(from_statuses))
    else:
        stmt = stmt.where(BatchJob.status.notin_(TERMINAL_JOB_STATUSES))

    result = await session.execute(stmt.values(status=status.value, **values))
    await session.commit()

    changed = bool(result.rowcount)
    if not changed:
        logger.warning("Job status transition skipped", job_id=job_id, status=status.value)
    return changed


async def mark_job_running(session: AsyncSession, job_id: int) -> bool:
    """pending -> running. A requeued job keeps its first ``started_at``."""
    return await transition_job(
        session,
        job_id,
        BatchJobStatus.RUNNING,
        from_statuses={BatchJobStatus.PENDING.value},
        started_at=func.coalesce(BatchJob.started_at, _now()),
    )


async def requeue_interrupted_jobs(session: AsyncSession) -> list[int]:
    """Put jobs left ``running`` by a stopped worker back in the queue.

    Items that were in flight go back to ``pending`` so they are generated
    again; finished items are kept. Only one worker runs at a time, so any
    job still ``running`` when it starts was interrupted.

    Returns:
        IDs of the requeued jobs
    """
    result = await session.execute(
        select(BatchJob.id).where(BatchJob.status == BatchJobStatus.RUNNING.value)
    )
    job_ids = list(result.scalars().all())
    if not job_ids:
        return []

    await session.execute(
        update(BatchJobItem)
        .where(BatchJobItem.job_id.in_(job_ids))
        .where(BatchJobItem.status == BatchItemStatus.RUNNING.value)
        .values(status=BatchItemStatus.PENDING.value, started_at=None)
    )
    await session.execute(
        update(BatchJob)
        .where(BatchJob.id.in_(job_ids))
        .where(BatchJob.status == BatchJobStatus.RUNNING.value)
        .values(status=BatchJobStatus.PENDING.value)
    )
    await session.commit()

    logger.warning("Requeued interrupted batch jobs", job_ids=job_ids)
    return job_ids


async def mark_job_completed(session: AsyncSession, job_id: int) -> bool:
    return await transition_job(
        session, job_id, BatchJobStatus.COMPLETED, completed_at=_now()
    )


async def mark_job_failed(session: AsyncSession, job_id: int, error: str) -> bool:
    """Mark a job failed and append the error to its error log."""
    current = await session.execute(select(BatchJob.error_log).where(BatchJob.id == job_id))
    error_log = list(current.scalar_one_or_none() or [])
    error_log.append(error)
    return await transition_job(
        session,
        job_id,
        BatchJobStatus.FAILED,
        completed_at=_now(),
        error_log=error_log,
    )


async def cancel_job(session: AsyncSession, job_id: int) -> BatchJob | None:
    """Request cancellation of a job.

    A running job stops at its next item boundary. Pending items are left
    pending.

    Returns:
        The cancelled job, or None if it does not exist

    Raises:
        JobNotCancellableError: If the job is completed or already cancelled
    """
    job = await get_job(session, job_id)
    if job is None:
        return None
    if job.status == BatchJobStatus.COMPLETED.value:
        raise JobNotCancellableError("Cannot cancel completed job")
    if job.status == BatchJobStatus.CANCELLED.value:
        raise JobNotCancellableError("Job already cancelled")

    await transition_job(
        session,
        job_id,
        BatchJobStatus.CANCELLED,
        from_statuses={BatchJobStatus.PENDING.value, BatchJobStatus.RUNNING.value},
        completed_at=_now(),
    )
    logger.info("Batch job cancelled", job_id=job_id, previous_status=job.status)
    return await get_job(session, job_id)


async def get_job_items(session: AsyncSession, job_id: int) -> list[BatchJobItem]:
    """All items of a job in processing order."""
    result = await session.execute(
        select(BatchJobItem)
        .where(BatchJobItem.job_id == job_id)
        .order_by(BatchJobItem.item_index)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_pending_items(session: AsyncSession, job_id: int) -> list[BatchJobItem]:
    """Pending items of a job in processing order."""
    result = await session.execute(
        select(BatchJobItem)
        .where(BatchJobItem.job_id == job_id)
        .where(BatchJobItem.status == BatchItemStatus.PENDING.value)
        .order_by(BatchJobItem.item_index)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def update_item(session: AsyncSession, item_id: int, **values: Any) -> None:
    """Apply a partial update to an item."""
    await session.execute(update(BatchJobItem).where(BatchJobItem.id == item_id).values(**values))
    await session.commit()


async def claim_item(session: AsyncSession, item_id: int) -> bool:
    """pending -> running. Returns False if the item was not pending."""
    result = await session.execute(
        update(BatchJobItem)
        .where(BatchJobItem.id == item_id)
        .where(BatchJobItem.status == BatchItemStatus.PENDING.value)
        .values(status=BatchItemStatus.RUNNING.value, started_at=_now())
    )
    await session.commit()
    return bool(result.rowcount)


async def finish_item(
    session: AsyncSession,
    item_id: int,
    status: BatchItemStatus,
    **values: Any,
) -> bool:
    """running -> completed/failed. Finished items are never modified again."""
    if status.value not in TERMINAL_ITEM_STATUSES:
        raise ValueError(f"{status.value} is not a terminal item status")

    result = await session.execute(
        update(BatchJobItem)
        .where(BatchJobItem.id == item_id)
        .where(BatchJobItem.status == BatchItemStatus.RUNNING.value)
        .values(status=status.value, completed_at=_now(), **values)
    )
    await session.commit()
    return bool(result.rowcount)


async def count_items_by_status(session: AsyncSession, job_id: int) -> dict[str, int]:
    """Count a job's items per status; every status key is present."""
    result = await session.execute(
        select(BatchJobItem.status, func.count())
        .where(BatchJobItem.job_id == job_id)
        .group_by(BatchJobItem.status)
    )
    counts = {status.value: 0 for status in BatchItemStatus}
    for status, count in result.all():
        counts[status] = count
    return counts


async def refresh_job_progress(session: AsyncSession, job_id: int) -> dict[str, int]:
    """Recompute job counters from item statuses and persist them.

    Returns:
        The counters that were written
    """
    counts = await count_items_by_status(session, job_id)
    successful = counts[BatchItemStatus.COMPLETED.value]
    failed = counts[BatchItemStatus.FAILED.value]
    progress = {
        "completed_items": successful + failed,
        "successful_items": successful,
        "failed_items": failed,
    }
    await update_job(session, job_id, **progress)
    return progress


def job_progress(job: BatchJob) -> dict[str, int]:
    """Progress summary for display."""
    percentage = round(job.completed_items / job.total_items * 100) if job.total_items else 0
    return {
        "total": job.total_items,
        "completed": job.completed_items,
        "successful": job.successful_items,
        "failed": job.failed_items,
        "percentage": percentage,
    }
