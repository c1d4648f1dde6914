"""Database models."""

from variation_batch.models.batch_job import (
    BatchItemStatus,
    BatchJob,
    BatchJobItem,
    BatchJobStatus,
)
from variation_batch.models.catalog import (
    Base,
    Breed,
    BreedCoat,
    CatalogImage,
    Coat,
    Format,
    Outfit,
    Style,
    Theme,
)

__all__ = [
    "Base",
    "BatchItemStatus",
    "BatchJob",
    "BatchJobItem",
    "BatchJobStatus",
    "Breed",
    "BreedCoat",
    "CatalogImage",
    "Coat",
    "Format",
    "Outfit",
    "Style",
    "Theme",
]
