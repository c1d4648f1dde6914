"""Typed view of the batch job configuration payload."""

from pydantic import BaseModel, ConfigDict, Field


class BreedCoatSelection(BaseModel):
    """A breed paired with one of its coats."""

    model_config = ConfigDict(populate_by_name=True)

    breed_id: int = Field(alias="breedId")
    coat_id: int = Field(alias="coatId")


class VariationConfig(BaseModel):
    """The variation axes requested for a job."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    breed_coats: list[BreedCoatSelection] = Field(default_factory=list, alias="breedCoats")
    outfits: list[int] = Field(default_factory=list)
    formats: list[int] = Field(default_factory=list)

    @property
    def item_count(self) -> int:
        return len(self.breed_coats) + len(self.outfits) + len(self.formats)


class BatchJobConfig(BaseModel):
    """Generation parameters shared by every item in a job.

    Unknown keys are kept so the stored payload round-trips untouched.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    original_prompt: str = Field(default="", alias="originalPrompt")
    current_breed: int | None = Field(default=None, alias="currentBreed")
    current_coat: int | None = Field(default=None, alias="currentCoat")
    current_theme: int | None = Field(default=None, alias="currentTheme")
    current_style: int | None = Field(default=None, alias="currentStyle")
    current_format: int | None = Field(default=None, alias="currentFormat")
    variation_config: VariationConfig = Field(
        default_factory=VariationConfig, alias="variationConfig"
    )
