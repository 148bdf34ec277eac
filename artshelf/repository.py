"""Data Access Layer for artshelf.

Encapsulates database operations using SQLModel/SQLAlchemy on an async
engine. Image paths are stored relative to the library root.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Iterator, Optional, Sequence, Type

from sqlalchemy import bindparam, delete, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlmodel import SQLModel, col, func, select

from .models import Artist, Artwork, ArtworkTag, Image, Tag
from .path_utils import to_relative
from .records import artist_key

# SQLite caps the number of bound parameters per statement
IN_CLAUSE_CHUNK = 500


def _chunks(items: Sequence[Any], size: int = IN_CLAUSE_CHUNK) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class Repository:
    """Storage collaborator used by the scan pipeline.

    Without a bound connection every call runs in its own short transaction.
    Inside `transaction()` all calls share one connection and commit together.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        library_root: Path,
        connection: Optional[AsyncConnection] = None,
    ):
        self.engine = engine
        self.library_root = library_root.resolve()
        self._conn = connection

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        if self._conn is not None:
            yield self._conn
            return
        async with self.engine.begin() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Repository"]:
        """Group several writes into one transaction."""
        if self._conn is not None:
            yield self
            return
        async with self.engine.begin() as conn:
            yield Repository(self.engine, self.library_root, connection=conn)

    # Generic operations

    async def create_many_and_return(
        self,
        model: Type[SQLModel],
        rows: list[dict[str, Any]],
        skip_duplicates: bool = True,
        returning: Optional[Sequence[str]] = None,
    ) -> list[dict[str, Any]]:
        """Insert rows and return the ones actually inserted.

        With skip_duplicates, rows that hit a unique constraint are skipped
        and are absent from the returned list.
        """
        if not rows:
            return []
        table = model.__table__
        stmt = sqlite_insert(table)
        if skip_duplicates:
            stmt = stmt.on_conflict_do_nothing()
        columns = [table.c[name] for name in returning] if returning else list(table.c)
        stmt = stmt.returning(*columns)
        async with self._connection() as conn:
            result = await conn.execute(stmt, rows)
            return [dict(row) for row in result.mappings().all()]

    async def create_many(
        self,
        model: Type[SQLModel],
        rows: list[dict[str, Any]],
        skip_duplicates: bool = True,
    ) -> int:
        """Insert rows and return how many were inserted."""
        pk = [c.name for c in model.__table__.primary_key.columns]
        inserted = await self.create_many_and_return(
            model, rows, skip_duplicates=skip_duplicates, returning=pk
        )
        return len(inserted)

    async def find_many(
        self,
        model: Type[SQLModel],
        *where: Any,
        columns: Optional[Sequence[str]] = None,
    ) -> list[dict[str, Any]]:
        table = model.__table__
        selected = [table.c[name] for name in columns] if columns else list(table.c)
        statement = select(*selected).where(*where)
        async with self._connection() as conn:
            result = await conn.execute(statement)
            return [dict(row) for row in result.mappings().all()]

    async def count(self, model: Type[SQLModel], *where: Any) -> int:
        statement = select(func.count()).select_from(model.__table__).where(*where)
        async with self._connection() as conn:
            return int((await conn.execute(statement)).scalar_one())

    async def delete_many(self, model: Type[SQLModel], *where: Any) -> int:
        async with self._connection() as conn:
            result = await conn.execute(delete(model.__table__).where(*where))
            return result.rowcount or 0

    # Lookups used to resolve natural keys

    async def artwork_ids_by_external_id(
        self, external_ids: Iterable[str], with_images_only: bool = False
    ) -> dict[str, int]:
        """Map external ids to artwork ids, optionally only for artworks that have images."""
        ids = sorted(set(external_ids))
        found: dict[str, int] = {}
        extra = [col(Artwork.image_count) > 0] if with_images_only else []
        for chunk in _chunks(ids):
            rows = await self.find_many(
                Artwork,
                col(Artwork.external_id).in_(chunk),
                *extra,
                columns=("id", "external_id"),
            )
            found.update({row["external_id"]: row["id"] for row in rows})
        return found

    async def artist_ids_by_key(
        self, user_ids: Iterable[str], names: Iterable[str]
    ) -> dict[str, int]:
        """Map artist natural keys to ids. Name keys match any artist with that name."""
        found: dict[str, int] = {}
        for chunk in _chunks(sorted(set(user_ids))):
            rows = await self.find_many(
                Artist, col(Artist.user_id).in_(chunk), columns=("id", "user_id", "name")
            )
            for row in rows:
                found[artist_key(row["user_id"], None)] = row["id"]
        for chunk in _chunks(sorted(set(names))):
            rows = await self.find_many(
                Artist, col(Artist.name).in_(chunk), columns=("id", "user_id", "name")
            )
            for row in sorted(rows, key=lambda r: (r["user_id"] is not None, r["id"])):
                found.setdefault(artist_key(None, row["name"]), row["id"])
        return found

    async def tag_ids_by_name(self, names: Iterable[str]) -> dict[str, int]:
        found: dict[str, int] = {}
        for chunk in _chunks(sorted(set(names))):
            rows = await self.find_many(Tag, col(Tag.name).in_(chunk), columns=("id", "name"))
            found.update({row["name"]: row["id"] for row in rows})
        return found

    async def artworks_with_external_ids(self) -> dict[str, int]:
        rows = await self.find_many(
            Artwork, col(Artwork.external_id).is_not(None), columns=("id", "external_id")
        )
        return {row["external_id"]: row["id"] for row in rows}

    # Maintenance

    async def refresh_image_counts(self, artwork_ids: Optional[Iterable[int]] = None) -> int:
        """Set artworks.image_count from the image rows. Returns rows updated."""
        counted = (
            select(func.count())
            .select_from(Image.__table__)
            .where(col(Image.artwork_id) == col(Artwork.id))
            .scalar_subquery()
        )
        statement = update(Artwork.__table__).values(image_count=counted)
        if artwork_ids is None:
            async with self._connection() as conn:
                return (await conn.execute(statement)).rowcount or 0

        updated = 0
        ids = sorted(set(artwork_ids))
        async with self._connection() as conn:
            for chunk in _chunks(ids):
                result = await conn.execute(statement.where(col(Artwork.id).in_(chunk)))
                updated += result.rowcount or 0
        return updated

    async def delete_artworks(self, artwork_ids: Iterable[int]) -> int:
        """Delete artworks together with their images and tag links."""
        ids = sorted(set(artwork_ids))
        deleted = 0
        async with self.transaction() as tx:
            for chunk in _chunks(ids):
                await tx.delete_many(ArtworkTag, col(ArtworkTag.artwork_id).in_(chunk))
                await tx.delete_many(Image, col(Image.artwork_id).in_(chunk))
                deleted += await tx.delete_many(Artwork, col(Artwork.id).in_(chunk))
        return deleted

    async def update_artworks(
        self, rows: list[dict[str, Any]], keep: Sequence[str] = ("image_count",)
    ) -> int:
        """Overwrite stored artworks matched by external_id with the given rows.

        Columns named in keep are left as stored.
        """
        if not rows:
            return 0
        table = Artwork.__table__
        columns = [name for name in rows[0] if name not in keep and name != "external_id"]
        statement = (
            update(table)
            .where(table.c.external_id == bindparam("match_external_id"))
            .values({name: bindparam(f"new_{name}") for name in columns})
        )
        params = [
            {**{f"new_{name}": row[name] for name in columns}, "match_external_id": row["external_id"]}
            for row in rows
        ]
        async with self._connection() as conn:
            return (await conn.execute(statement, params)).rowcount or 0

    async def delete_artwork_tags(self, artwork_ids: Iterable[int]) -> int:
        deleted = 0
        for chunk in _chunks(sorted(set(artwork_ids))):
            deleted += await self.delete_many(ArtworkTag, col(ArtworkTag.artwork_id).in_(chunk))
        return deleted

    async def images_under(self, base: Path) -> list[dict[str, Any]]:
        """Return image rows stored under base (id, path, artwork_id)."""
        base = base.resolve()
        columns = ("id", "path", "artwork_id")
        if base == self.library_root:
            return await self.find_many(Image, columns=columns)
        prefix = to_relative(base, self.library_root).rstrip("/")
        return await self.find_many(
            Image,
            (col(Image.path) == prefix) | col(Image.path).startswith(prefix + "/", autoescape=True),
            columns=columns,
        )

    async def delete_images(self, image_ids: Iterable[int]) -> int:
        deleted = 0
        for chunk in _chunks(sorted(set(image_ids))):
            deleted += await self.delete_many(Image, col(Image.id).in_(chunk))
        return deleted

    async def artworks_without_images(self) -> list[int]:
        with_images = select(Image.artwork_id).distinct()
        rows = await self.find_many(
            Artwork, col(Artwork.id).not_in(with_images), columns=("id",)
        )
        return [row["id"] for row in rows]

    async def delete_orphan_artists(self) -> int:
        used = select(Artwork.artist_id).where(col(Artwork.artist_id).is_not(None))
        return await self.delete_many(Artist, col(Artist.id).not_in(used))

    async def delete_orphan_tags(self) -> int:
        used = select(ArtworkTag.tag_id).distinct()
        return await self.delete_many(Tag, col(Tag.id).not_in(used))

    async def library_stats(self) -> dict[str, int]:
        return {
            "artists": await self.count(Artist),
            "artworks": await self.count(Artwork),
            "images": await self.count(Image),
            "tags": await self.count(Tag),
            "artwork_tags": await self.count(ArtworkTag),
        }
