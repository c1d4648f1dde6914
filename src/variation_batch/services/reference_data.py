"""Reference data loading and item selector resolution."""

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from variation_batch.models.batch_job import BatchJobItem
from variation_batch.models.catalog import Breed, BreedCoat, Coat, Format, Outfit, Style, Theme
from variation_batch.models.job_config import BatchJobConfig


class SelectorResolutionError(Exception):
    """Raised when an item's selectors do not match the reference data."""


@dataclass(frozen=True)
class ReferenceData:
    """Lookup tables loaded once per job run."""

    breeds: dict[int, Breed] = field(default_factory=dict)
    breed_coats: dict[tuple[int, int], Coat] = field(default_factory=dict)
    outfits: dict[int, Outfit] = field(default_factory=dict)
    formats: dict[int, Format] = field(default_factory=dict)
    themes: dict[int, Theme] = field(default_factory=dict)
    styles: dict[int, Style] = field(default_factory=dict)


@dataclass(frozen=True)
class BreedCoatSelector:
    """Re-render the subject as another breed wearing a specific coat."""

    breed: Breed
    coat: Coat

    kind = "breed_coat"


@dataclass(frozen=True)
class OutfitSelector:
    """Dress the subject in an outfit."""

    outfit: Outfit

    kind = "outfit"


@dataclass(frozen=True)
class FormatSelector:
    """Re-compose the image in another format."""

    format: Format

    kind = "format"


ItemSelector = BreedCoatSelector | OutfitSelector | FormatSelector


@dataclass(frozen=True)
class PromptContext:
    """Job-wide inputs shared by every generation call."""

    original_prompt: str
    theme: Theme | None = None
    style: Style | None = None
    format: Format | None = None
    breed: Breed | None = None
    target_age: str | None = None


async def load_reference_data(session: AsyncSession) -> ReferenceData:
    """Bulk-load all active lookup rows.

    Args:
        session: Database session

    Returns:
        Reference data keyed by id
    """
    breeds = await session.execute(select(Breed).where(Breed.is_active.is_(True)))
    breed_coats = await session.execute(select(BreedCoat))
    outfits = await session.execute(select(Outfit).where(Outfit.is_active.is_(True)))
    formats = await session.execute(select(Format).where(Format.is_active.is_(True)))
    themes = await session.execute(select(Theme).where(Theme.is_active.is_(True)))
    styles = await session.execute(select(Style).where(Style.is_active.is_(True)))

    return ReferenceData(
        breeds={breed.id: breed for breed in breeds.scalars().all()},
        breed_coats={
            (pair.breed_id, pair.coat_id): pair.coat for pair in breed_coats.scalars().all()
        },
        outfits={outfit.id: outfit for outfit in outfits.scalars().all()},
        formats={fmt.id: fmt for fmt in formats.scalars().all()},
        themes={theme.id: theme for theme in themes.scalars().all()},
        styles={style.id: style for style in styles.scalars().all()},
    )


def build_prompt_context(
    config: BatchJobConfig, reference: ReferenceData, target_age: str | None
) -> PromptContext:
    """Resolve the job-level config ids into a prompt context.

    Ids that are missing or inactive are dropped rather than failing the job.
    """
    return PromptContext(
        original_prompt=config.original_prompt,
        theme=reference.themes.get(config.current_theme or 0),
        style=reference.styles.get(config.current_style or 0),
        format=reference.formats.get(config.current_format or 0),
        breed=reference.breeds.get(config.current_breed or 0),
        target_age=target_age,
    )


def resolve_item_selector(item: BatchJobItem, reference: ReferenceData) -> ItemSelector:
    """Resolve an item's selector columns against reference data.

    Args:
        item: The batch item
        reference: Reference data for the current run

    Returns:
        The matching selector

    Raises:
        SelectorResolutionError: If the ids are unknown or no selector is set
    """
    if item.breed_id is not None and item.coat_id is not None:
        breed = reference.breeds.get(item.breed_id)
        if breed is None:
            raise SelectorResolutionError(f"Breed {item.breed_id} not found")
        coat = reference.breed_coats.get((item.breed_id, item.coat_id))
        if coat is None:
            raise SelectorResolutionError(
                f"Coat {item.coat_id} is not available for breed {breed.name}"
            )
        return BreedCoatSelector(breed=breed, coat=coat)

    if item.outfit_id is not None:
        outfit = reference.outfits.get(item.outfit_id)
        if outfit is None:
            raise SelectorResolutionError(f"Outfit {item.outfit_id} not found")
        return OutfitSelector(outfit=outfit)

    if item.format_id is not None:
        fmt = reference.formats.get(item.format_id)
        if fmt is None:
            raise SelectorResolutionError(f"Format {item.format_id} not found")
        return FormatSelector(format=fmt)

    raise SelectorResolutionError("Item has no variation selector")
