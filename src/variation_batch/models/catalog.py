"""Catalog and reference-data models used to resolve variation selectors."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""


class ReferenceMixin:
    """Columns shared by the named lookup tables."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    prompt_modifier: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Breed(ReferenceMixin, Base):
    """An animal breed that variations can target."""

    __tablename__ = "breeds"

    animal_type: Mapped[str] = mapped_column(String(20), default="dog")
    personality_traits: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)


class Coat(Base):
    """A coat colour or pattern."""

    __tablename__ = "coats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    hex_color: Mapped[str | None] = mapped_column(String(7), nullable=True)
    pattern_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    rarity: Mapped[str | None] = mapped_column(String(20), nullable=True)


class BreedCoat(Base):
    """A coat that is valid for a given breed."""

    __tablename__ = "breed_coats"
    __table_args__ = (UniqueConstraint("breed_id", "coat_id", name="ix_breed_coats_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    breed_id: Mapped[int] = mapped_column(Integer, ForeignKey("breeds.id"), nullable=False)
    coat_id: Mapped[int] = mapped_column(Integer, ForeignKey("coats.id"), nullable=False)

    breed: Mapped[Breed] = relationship(Breed, lazy="joined")
    coat: Mapped[Coat] = relationship(Coat, lazy="joined")


class Theme(ReferenceMixin, Base):
    """A scene theme applied to every variation in a job."""

    __tablename__ = "themes"


class Style(ReferenceMixin, Base):
    """An art style applied to every variation in a job."""

    __tablename__ = "styles"


class Format(ReferenceMixin, Base):
    """An output format such as a portrait or a full-body shot."""

    __tablename__ = "formats"

    aspect_ratio: Mapped[str | None] = mapped_column(String(10), nullable=True)


class Outfit(ReferenceMixin, Base):
    """An outfit the subject can be dressed in."""

    __tablename__ = "outfits"


class CatalogImage(Base):
    """An image in the catalog, either uploaded or generated by a batch."""

    __tablename__ = "image_catalog"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(50), default="image/png")
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    public_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    prompt_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    extra: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    breed_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("breeds.id"), nullable=True)
    coat_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("coats.id"), nullable=True)
    outfit_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("outfits.id"), nullable=True)
    theme_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("themes.id"), nullable=True)
    style_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("styles.id"), nullable=True)
    format_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("formats.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
