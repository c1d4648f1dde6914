"""Per-job activity timeline derived from job and item rows."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from variation_batch.models.batch_job import BatchItemStatus, BatchJob, BatchJobItem, BatchJobStatus
from variation_batch.services.reference_data import ReferenceData


@dataclass
class LogEntry:
    """One event in a job's timeline."""

    timestamp: datetime
    level: str
    type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobLogSummary:
    total_logs: int
    log_types: list[str]
    levels: list[str]
    last_update: datetime


def item_type(item: BatchJobItem) -> str:
    if item.breed_id is not None and item.coat_id is not None:
        return "breed_coat"
    if item.outfit_id is not None:
        return "outfit"
    if item.format_id is not None:
        return "format"
    return "unknown"


def item_display_name(item: BatchJobItem, reference: ReferenceData) -> str:
    """Human readable name of what an item generates."""
    kind = item_type(item)
    if kind == "breed_coat":
        breed = reference.breeds.get(item.breed_id)
        coat = reference.breed_coats.get((item.breed_id, item.coat_id))
        if breed is not None and coat is not None:
            return f"{breed.name} with {coat.name} coat"
    elif kind == "outfit":
        outfit = reference.outfits.get(item.outfit_id)
        if outfit is not None:
            return f"{outfit.name} outfit"
    elif kind == "format":
        format_ = reference.formats.get(item.format_id)
        if format_ is not None:
            return f"{format_.name} format"
    return f"Item {item.item_index + 1}"


def _item_entries(
    job: BatchJob, item: BatchJobItem, position: int, reference: ReferenceData
) -> list[LogEntry]:
    name = item_display_name(item, reference)
    entries: list[LogEntry] = []

    if item.started_at is not None:
        entries.append(
            LogEntry(
                timestamp=item.started_at,
                level="info",
                type="item_started",
                message=f"Processing item {position}/{job.total_items}: {name}",
                details={
                    "item_index": item.item_index,
                    "item_id": item.id,
                    "item_type": item_type(item),
                },
            )
        )

    if item.completed_at is None:
        return entries

    if item.status == BatchItemStatus.COMPLETED.value:
        entries.append(
            LogEntry(
                timestamp=item.completed_at,
                level="success",
                type="item_completed",
                message=f"Generated {name}",
                details={
                    "item_index": item.item_index,
                    "generated_image_id": item.generated_image_id,
                    "gemini_duration_ms": item.gemini_duration_ms or 0,
                    "total_duration_ms": item.total_duration_ms or 0,
                },
            )
        )
    elif item.status == BatchItemStatus.FAILED.value:
        entries.append(
            LogEntry(
                timestamp=item.completed_at,
                level="error",
                type="item_failed",
                message=f"Failed to generate {name}",
                details={
                    "item_index": item.item_index,
                    "error": item.error_message,
                    "total_duration_ms": item.total_duration_ms or 0,
                },
            )
        )
    return entries


def _completion_entry(job: BatchJob, completed_at: datetime, item_count: int) -> LogEntry:
    started = job.started_at or job.created_at
    duration_seconds = round((completed_at - started).total_seconds())
    success_rate = (
        round(job.successful_items / job.completed_items * 100) if job.completed_items else 0
    )
    return LogEntry(
        timestamp=completed_at,
        level="success" if job.status == BatchJobStatus.COMPLETED.value else "error",
        type="job_completed",
        message=(
            f"Batch job {job.status}: {job.successful_items}/{job.total_items} items "
            f"successful ({success_rate}% success rate)"
        ),
        details={
            "status": job.status,
            "duration_seconds": duration_seconds,
            "successful_items": job.successful_items,
            "failed_items": job.failed_items,
            "success_rate": success_rate,
            "average_item_seconds": (
                round(duration_seconds / item_count) if item_count else None
            ),
            "errors": job.error_log or [],
        },
    )


def build_job_log(
    job: BatchJob, items: list[BatchJobItem], reference: ReferenceData
) -> tuple[list[LogEntry], JobLogSummary]:
    """Build the timeline of a job, oldest event first.

    Args:
        job: The job
        items: Its items in ``item_index`` order
        reference: Reference data used to name the items

    Returns:
        The sorted entries and a summary of them
    """
    entries = [
        LogEntry(
            timestamp=job.created_at,
            level="info",
            type="job_created",
            message=f"Batch job created with {job.total_items} items",
            details={"job_id": job.id, "job_type": job.job_type, "total_items": job.total_items},
        )
    ]
    if job.started_at is not None:
        entries.append(
            LogEntry(
                timestamp=job.started_at,
                level="info",
                type="job_started",
                message="Batch processing started",
            )
        )

    for position, item in enumerate(items, start=1):
        entries.extend(_item_entries(job, item, position, reference))

    if job.completed_at is not None:
        entries.append(_completion_entry(job, job.completed_at, len(items)))

    # Stable sort keeps events that share a timestamp in recording order
    entries.sort(key=lambda entry: entry.timestamp)

    summary = JobLogSummary(
        total_logs=len(entries),
        log_types=list(dict.fromkeys(entry.type for entry in entries)),
        levels=list(dict.fromkeys(entry.level for entry in entries)),
        last_update=entries[-1].timestamp,
    )
    return entries, summary
