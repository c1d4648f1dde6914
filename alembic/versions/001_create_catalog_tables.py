"""Create reference data and image catalog tables

Revision ID: 001
Revises:
Create Date: 2026-10-12

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

REFERENCE_TABLES = ("breeds", "themes", "styles", "formats", "outfits")


def _reference_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("prompt_modifier", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    ]


def upgrade() -> None:
    op.create_table(
        "breeds",
        *_reference_columns(),
        sa.Column("animal_type", sa.String(length=20), nullable=False, server_default="dog"),
        sa.Column("personality_traits", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "themes",
        *_reference_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "styles",
        *_reference_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "formats",
        *_reference_columns(),
        sa.Column("aspect_ratio", sa.String(length=10), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "outfits",
        *_reference_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "coats",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("hex_color", sa.String(length=7), nullable=True),
        sa.Column("pattern_type", sa.String(length=50), nullable=True),
        sa.Column("rarity", sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "breed_coats",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("breed_id", sa.Integer(), nullable=False),
        sa.Column("coat_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["breed_id"], ["breeds.id"]),
        sa.ForeignKeyConstraint(["coat_id"], ["coats.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("breed_id", "coat_id", name="ix_breed_coats_pair"),
    )
    op.create_table(
        "image_catalog",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=50), nullable=False, server_default="image/png"),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("storage_path", sa.String(length=500), nullable=True),
        sa.Column("public_url", sa.String(length=1000), nullable=True),
        sa.Column("prompt_text", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("extra", sa.JSON(), nullable=True),
        sa.Column("breed_id", sa.Integer(), nullable=True),
        sa.Column("coat_id", sa.Integer(), nullable=True),
        sa.Column("outfit_id", sa.Integer(), nullable=True),
        sa.Column("theme_id", sa.Integer(), nullable=True),
        sa.Column("style_id", sa.Integer(), nullable=True),
        sa.Column("format_id", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.ForeignKeyConstraint(["breed_id"], ["breeds.id"]),
        sa.ForeignKeyConstraint(["coat_id"], ["coats.id"]),
        sa.ForeignKeyConstraint(["outfit_id"], ["outfits.id"]),
        sa.ForeignKeyConstraint(["theme_id"], ["themes.id"]),
        sa.ForeignKeyConstraint(["style_id"], ["styles.id"]),
        sa.ForeignKeyConstraint(["format_id"], ["formats.id"]),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("image_catalog")
    op.drop_table("breed_coats")
    op.drop_table("coats")
    for table in reversed(REFERENCE_TABLES):
        op.drop_table(table)
