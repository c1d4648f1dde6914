"""Test fixtures and configuration."""

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from variation_batch.api.routes import router
from variation_batch.core.database import build_engine, build_session_factory, get_session
from variation_batch.crud import batch_job as batch_crud
from variation_batch.models.batch_job import BatchJob
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
from variation_batch.models.job_config import BatchJobConfig
from variation_batch.services.gemini import GeneratedVariation, build_variation_metadata
from variation_batch.services.reference_data import ItemSelector, PromptContext

# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SOURCE_IMAGE_PATH = "sources/original.png"
SOURCE_IMAGE_BYTES = b"\x89PNG\r\n\x1a\nsource"


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Fresh in-memory database with all tables."""
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Provide a session on the test database."""
    async with session_factory() as session:
        yield session


@dataclass
class SeedData:
    """Ids of the reference rows created by the seed fixture."""

    labrador: int
    poodle: int
    black: int
    cream: int
    raincoat: int
    portrait: int
    theme: int
    style: int
    source_image: int


@pytest.fixture
async def seed(db_session: AsyncSession) -> SeedData:
    """Reference data and a source image."""
    labrador = Breed(
        name="Labrador",
        slug="labrador",
        personality_traits=["friendly", "loyal"],
    )
    poodle = Breed(name="Poodle", slug="poodle", prompt_modifier="curly fur")
    retired = Breed(name="Dodo Hound", slug="dodo-hound", is_active=False)
    black = Coat(name="Black", slug="black", hex_color="#000000", pattern_type="solid")
    cream = Coat(name="Cream", slug="cream", hex_color="#FFFDD0")
    raincoat = Outfit(name="Yellow Raincoat", slug="yellow-raincoat")
    portrait = Format(name="Portrait", slug="portrait", aspect_ratio="4:5")
    theme = Theme(name="Beach", slug="beach", prompt_modifier="sunny beach")
    style = Style(name="Watercolour", slug="watercolour", prompt_modifier="soft watercolour")
    source = CatalogImage(
        filename="original.png",
        storage_path=SOURCE_IMAGE_PATH,
        prompt_text="A dog on a beach",
    )
    db_session.add_all(
        [labrador, poodle, retired, black, cream, raincoat, portrait, theme, style, source]
    )
    await db_session.flush()

    db_session.add_all(
        [
            BreedCoat(breed_id=labrador.id, coat_id=black.id),
            BreedCoat(breed_id=labrador.id, coat_id=cream.id),
            BreedCoat(breed_id=poodle.id, coat_id=black.id),
            BreedCoat(breed_id=poodle.id, coat_id=cream.id),
        ]
    )
    await db_session.commit()

    return SeedData(
        labrador=labrador.id,
        poodle=poodle.id,
        black=black.id,
        cream=cream.id,
        raincoat=raincoat.id,
        portrait=portrait.id,
        theme=theme.id,
        style=style.id,
        source_image=source.id,
    )


def make_config(seed: SeedData, **variations: object) -> BatchJobConfig:
    """Job config with four breed-coat variations unless overridden."""
    variation_config = {
        "breedCoats": [
            {"breedId": seed.labrador, "coatId": seed.black},
            {"breedId": seed.labrador, "coatId": seed.cream},
            {"breedId": seed.poodle, "coatId": seed.black},
            {"breedId": seed.poodle, "coatId": seed.cream},
        ]
    }
    variation_config.update(variations)
    return BatchJobConfig.model_validate(
        {
            "originalPrompt": "A dog on a beach",
            "currentBreed": seed.labrador,
            "currentTheme": seed.theme,
            "currentStyle": seed.style,
            "variationConfig": variation_config,
        }
    )


@pytest.fixture
async def four_item_job(db_session: AsyncSession, seed: SeedData) -> BatchJob:
    """A pending job with four breed-coat items."""
    return await batch_crud.create_batch_job(db_session, seed.source_image, make_config(seed))


class FakeGenerator:
    """Generation backend double.

    ``failures`` maps 1-based call numbers to exceptions to raise and
    ``empty`` lists call numbers that produce no image.
    """

    def __init__(
        self,
        failures: dict[int, Exception] | None = None,
        empty: set[int] | None = None,
        on_call: Callable[[int], Awaitable[None]] | None = None,
    ) -> None:
        self.failures = failures or {}
        self.empty = empty or set()
        self.on_call = on_call
        self.calls: list[ItemSelector] = []
        self.sources: list[bytes] = []

    async def generate_variation(
        self,
        source_image: bytes,
        context: PromptContext,
        selector: ItemSelector,
        source_mime_type: str = "image/png",
    ) -> GeneratedVariation | None:
        self.calls.append(selector)
        self.sources.append(source_image)
        call_number = len(self.calls)
        if self.on_call is not None:
            await self.on_call(call_number)
        if call_number in self.failures:
            raise self.failures[call_number]
        if call_number in self.empty:
            return None
        return GeneratedVariation(
            image_data=f"generated-{call_number}".encode(),
            mime_type="image/png",
            prompt=f"prompt {call_number}",
            metadata=build_variation_metadata(context, selector),
        )


class FakeDescriber:
    """Description service double."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.subjects: list[str | None] = []

    async def describe(
        self,
        image_data: bytes,
        subject_name: str | None = None,
        personality_traits: list[str] | None = None,
        mime_type: str = "image/png",
    ) -> str:
        self.subjects.append(subject_name)
        if self.fail:
            raise RuntimeError("description backend down")
        return f"A lovely {subject_name or 'pet'}"


class FakeStorage:
    """In-memory object storage."""

    def __init__(self, fail_uploads: bool = False) -> None:
        self.fail_uploads = fail_uploads
        self.objects: dict[str, bytes] = {SOURCE_IMAGE_PATH: SOURCE_IMAGE_BYTES}

    async def upload_image(
        self, object_path: str, image_data: bytes, content_type: str = "image/png"
    ) -> str:
        if self.fail_uploads:
            raise ConnectionError("storage unavailable")
        self.objects[object_path] = image_data
        return object_path

    async def get_image(self, object_path: str) -> bytes | None:
        return self.objects.get(object_path)

    def get_public_url(self, object_path: str) -> str:
        return f"http://storage.test/variations/{object_path}"


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def describer() -> FakeDescriber:
    return FakeDescriber()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncClient]:
    """Async client for the API router backed by the test database."""
    test_app = FastAPI(title="Variation Batch Test")
    test_app.include_router(router)

    async def get_test_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    test_app.dependency_overrides[get_session] = get_test_session

    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac
