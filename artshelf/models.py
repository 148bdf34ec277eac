"""SQLModel database models for artshelf."""

from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint, func
from sqlmodel import Field, SQLModel


class ArtistBase(SQLModel):
    name: str = Field(index=True)
    username: Optional[str] = None
    user_id: Optional[str] = Field(default=None, unique=True, index=True)
    bio: Optional[str] = None


class Artist(ArtistBase, table=True):
    __tablename__ = "artists"
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: Optional[datetime] = Field(
        default=None, sa_column_kwargs={"server_default": func.current_timestamp()}
    )


class ArtworkBase(SQLModel):
    title: str
    description: Optional[str] = None
    artist_id: Optional[int] = Field(default=None, foreign_key="artists.id", index=True)
    external_id: str = Field(unique=True, index=True)
    source_url: Optional[str] = None
    original_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    x_restrict: Optional[str] = None
    is_ai_generated: Optional[bool] = None
    size: Optional[str] = None
    bookmark_count: Optional[int] = None
    source_date: Optional[datetime] = None
    image_count: int = 0
    directory_created_at: Optional[datetime] = None


class Artwork(ArtworkBase, table=True):
    __tablename__ = "artworks"
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: Optional[datetime] = Field(
        default=None, sa_column_kwargs={"server_default": func.current_timestamp()}
    )


class ImageBase(SQLModel):
    path: str = Field(unique=True, index=True)
    size: Optional[int] = None
    sort_order: int = 0
    artwork_id: int = Field(foreign_key="artworks.id", index=True)


class Image(ImageBase, table=True):
    __tablename__ = "images"
    __table_args__ = (
        UniqueConstraint("artwork_id", "sort_order", name="uq_images_artwork_sort"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)


class ArtworkTag(SQLModel, table=True):
    __tablename__ = "artwork_tags"
    artwork_id: int = Field(foreign_key="artworks.id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True, index=True)
