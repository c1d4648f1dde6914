"""Batch job and batch job item models."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from variation_batch.models.catalog import Base


class BatchJobStatus(str, Enum):
    """Lifecycle status of a batch job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchItemStatus(str, Enum):
    """Lifecycle status of a single batch item."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = frozenset(
    {
        BatchJobStatus.COMPLETED.value,
        BatchJobStatus.FAILED.value,
        BatchJobStatus.CANCELLED.value,
    }
)

TERMINAL_ITEM_STATUSES = frozenset(
    {BatchItemStatus.COMPLETED.value, BatchItemStatus.FAILED.value}
)


class BatchJob(Base):
    """One batch run producing many variations from a single source image."""

    __tablename__ = "batch_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(50), default="image_generation")
    status: Mapped[str] = mapped_column(String(20), default=BatchJobStatus.PENDING.value)

    # Configuration
    original_image_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("image_catalog.id"), nullable=False
    )
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    target_age: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Progress, always derived from item statuses
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, default=0)
    successful_items: Mapped[int] = mapped_column(Integer, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Fatal errors only
    error_log: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    items: Mapped[list["BatchJobItem"]] = relationship(
        "BatchJobItem",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="BatchJobItem.item_index",
    )


class BatchJobItem(Base):
    """One requested variation within a batch job."""

    __tablename__ = "batch_job_items"
    __table_args__ = (UniqueConstraint("job_id", "item_index", name="ix_batch_job_items_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False
    )
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)

    # Selectors
    breed_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coat_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outfit_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    format_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=BatchItemStatus.PENDING.value)

    # Results
    generated_image_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("image_catalog.id"), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    gemini_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    job: Mapped[BatchJob] = relationship(BatchJob, back_populates="items")
