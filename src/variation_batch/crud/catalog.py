"""CRUD operations for catalog images."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from variation_batch.models.catalog import CatalogImage


async def get_catalog_image(db: AsyncSession, image_id: int) -> CatalogImage | None:
    """Get a catalog image by id."""
    result = await db.execute(select(CatalogImage).where(CatalogImage.id == image_id))
    return result.scalar_one_or_none()


async def create_catalog_image(db: AsyncSession, **values: Any) -> CatalogImage:
    """Insert a catalog image and return it."""
    image = CatalogImage(**values)
    db.add(image)
    await db.commit()
    await db.refresh(image)
    return image
