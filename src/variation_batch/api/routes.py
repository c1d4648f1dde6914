"""API routes for batch job management."""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from variation_batch.core.database import get_session
from variation_batch.crud import batch_job as batch_crud
from variation_batch.crud.catalog import get_catalog_image
from variation_batch.models.job_config import BatchJobConfig
from variation_batch.services.job_log import build_job_log
from variation_batch.services.reference_data import load_reference_data

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["batch-jobs"])

DbSession = Annotated[AsyncSession, Depends(get_session)]


class BatchJobCreate(BatchJobConfig):
    """Request model for creating a batch job."""

    original_image_id: int = Field(..., alias="originalImageId")
    target_age: str | None = Field(default=None, alias="targetAge", max_length=20)


class BatchJobCreated(BaseModel):
    """Response model for a newly created job."""

    job_id: int
    status: str
    total_items: int


class BatchJobResponse(BaseModel):
    """Response model for job data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_type: str
    status: str
    original_image_id: int
    target_age: str | None
    total_items: int
    completed_items: int
    successful_items: int
    failed_items: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    error_log: list[str] | None


class BatchJobItemResponse(BaseModel):
    """Response model for item data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    item_index: int
    status: str
    breed_id: int | None
    coat_id: int | None
    outfit_id: int | None
    format_id: int | None
    generated_image_id: int | None
    error_message: str | None
    gemini_duration_ms: int | None
    total_duration_ms: int | None
    started_at: datetime | None
    completed_at: datetime | None


class ProgressResponse(BaseModel):
    """Aggregated job progress."""

    total: int
    completed: int
    successful: int
    failed: int
    percentage: int


class BatchJobDetailResponse(BaseModel):
    """Job with its items and progress."""

    job: BatchJobResponse
    items: list[BatchJobItemResponse]
    progress: ProgressResponse


class LogEntryResponse(BaseModel):
    """One event of a job's timeline."""

    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    level: str
    type: str
    message: str
    details: dict[str, Any]


class LogSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_logs: int
    log_types: list[str]
    levels: list[str]
    last_update: datetime


class BatchJobLogResponse(BaseModel):
    """Job timeline with a summary."""

    job: BatchJobResponse
    logs: list[LogEntryResponse]
    summary: LogSummaryResponse


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str


@router.get("/health", response_model=HealthResponse)
async def health_check(session: DbSession) -> HealthResponse:
    """Health check endpoint."""
    from variation_batch import __version__

    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Database health check failed")
        db_status = "disconnected"

    return HealthResponse(status="healthy", version=__version__, database=db_status)


@router.post(
    "/batch-jobs",
    response_model=BatchJobCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_batch_job(payload: BatchJobCreate, session: DbSession) -> BatchJobCreated:
    """Create a batch job; the worker picks it up."""
    if payload.variation_config.item_count == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No variations specified"
        )

    if await get_catalog_image(session, payload.original_image_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Original image not found"
        )

    config = BatchJobConfig.model_validate(
        payload.model_dump(by_alias=True, exclude={"original_image_id", "target_age"})
    )
    job = await batch_crud.create_batch_job(
        session, payload.original_image_id, config, target_age=payload.target_age
    )
    return BatchJobCreated(job_id=job.id, status=job.status, total_items=job.total_items)


@router.get("/batch-jobs", response_model=list[BatchJobResponse])
async def list_batch_jobs(session: DbSession) -> list[BatchJobResponse]:
    """Most recent batch jobs."""
    jobs = await batch_crud.list_jobs(session)
    return [BatchJobResponse.model_validate(job) for job in jobs]


@router.get("/batch-jobs/{job_id}", response_model=BatchJobDetailResponse)
async def get_batch_job(job_id: int, session: DbSession) -> BatchJobDetailResponse:
    """A job with its items and progress."""
    job = await batch_crud.get_job(session, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    items = await batch_crud.get_job_items(session, job_id)
    return BatchJobDetailResponse(
        job=BatchJobResponse.model_validate(job),
        items=[BatchJobItemResponse.model_validate(item) for item in items],
        progress=ProgressResponse(**batch_crud.job_progress(job)),
    )


@router.get("/batch-jobs/{job_id}/logs", response_model=BatchJobLogResponse)
async def get_batch_job_logs(job_id: int, session: DbSession) -> BatchJobLogResponse:
    """Timeline of a job built from its item rows and timestamps."""
    job = await batch_crud.get_job(session, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    items = await batch_crud.get_job_items(session, job_id)
    reference = await load_reference_data(session)
    entries, summary = build_job_log(job, items, reference)
    return BatchJobLogResponse(
        job=BatchJobResponse.model_validate(job),
        logs=[LogEntryResponse.model_validate(entry) for entry in entries],
        summary=LogSummaryResponse.model_validate(summary),
    )


@router.delete("/batch-jobs/{job_id}", response_model=BatchJobResponse)
async def cancel_batch_job(job_id: int, session: DbSession) -> BatchJobResponse:
    """Cancel a job. A running job stops before its next item."""
    try:
        job = await batch_crud.cancel_job(session, job_id)
    except batch_crud.JobNotCancellableError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return BatchJobResponse.model_validate(job)
