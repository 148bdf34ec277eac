"""Tests for the data access layer."""

from datetime import datetime, timezone

import pytest

from artshelf.models import Artist, Artwork, ArtworkTag, Image, Tag


async def _artwork(repository, external_id="1", user_id="7"):
    artist = await repository.create_many_and_return(Artist, [{"name": "Alice", "user_id": user_id}])
    artwork = await repository.create_many_and_return(
        Artwork, [{"title": "t", "external_id": external_id, "artist_id": artist[0]["id"]}]
    )
    return artwork[0]["id"]


@pytest.mark.asyncio
async def test_create_many_and_return_skips_duplicates(repository):
    first = await repository.create_many_and_return(Tag, [{"name": "a"}, {"name": "b"}])
    second = await repository.create_many_and_return(
        Tag, [{"name": "b"}, {"name": "c"}], returning=("name",)
    )
    assert {r["name"] for r in first} == {"a", "b"}
    assert second == [{"name": "c"}]


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(repository):
    with pytest.raises(RuntimeError):
        async with repository.transaction() as tx:
            await tx.create_many(Tag, [{"name": "a"}])
            raise RuntimeError("abort")
    assert await repository.count(Tag) == 0


@pytest.mark.asyncio
async def test_refresh_image_counts(repository):
    artwork_id = await _artwork(repository)
    await repository.create_many(
        Image,
        [
            {"path": "a/1_p0.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": 1},
            {"path": "a/1_p1.jpg", "sort_order": 1, "artwork_id": artwork_id, "size": 1},
        ],
    )
    assert await repository.refresh_image_counts([artwork_id]) == 1
    assert await repository.artwork_ids_by_external_id(["1"], with_images_only=True) == {"1": artwork_id}


@pytest.mark.asyncio
async def test_duplicate_sort_order_is_skipped(repository):
    artwork_id = await _artwork(repository)
    rows = [
        {"path": "a/1_p0.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": None},
        {"path": "a/1.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": None},
    ]
    assert await repository.create_many(Image, rows) == 1


@pytest.mark.asyncio
async def test_delete_artworks_removes_dependents(repository):
    artwork_id = await _artwork(repository)
    tag = await repository.create_many_and_return(Tag, [{"name": "a"}])
    await repository.create_many(ArtworkTag, [{"artwork_id": artwork_id, "tag_id": tag[0]["id"]}])
    await repository.create_many(
        Image, [{"path": "a/1_p0.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": 1}]
    )

    assert await repository.delete_artworks([artwork_id]) == 1
    assert await repository.count(Image) == 0
    assert await repository.count(ArtworkTag) == 0
    assert await repository.delete_orphan_artists() == 1
    assert await repository.delete_orphan_tags() == 1
    assert await repository.library_stats() == {
        "artists": 0, "artworks": 0, "images": 0, "tags": 0, "artwork_tags": 0,
    }


@pytest.mark.asyncio
async def test_images_under_matches_whole_directory_names(repository, library):
    artwork_id = await _artwork(repository)
    await repository.create_many(
        Image,
        [
            {"path": "a_b/1_p0.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": 1},
            {"path": "axb/1_p1.jpg", "sort_order": 1, "artwork_id": artwork_id, "size": 1},
            {"path": "a_b2/1_p2.jpg", "sort_order": 2, "artwork_id": artwork_id, "size": 1},
        ],
    )
    rows = await repository.images_under(library / "a_b")
    assert [r["path"] for r in rows] == ["a_b/1_p0.jpg"]
    assert len(await repository.images_under(library)) == 3


@pytest.mark.asyncio
async def test_artist_lookup_by_user_id_and_name(repository):
    await repository.create_many(
        Artist, [{"name": "Alice", "user_id": "7"}, {"name": "Bob", "user_id": None}]
    )
    found = await repository.artist_ids_by_key(["7", "9"], ["Bob", "Nobody"])
    assert set(found) == {"uid:7", "name:Bob"}


@pytest.mark.asyncio
async def test_artwork_rows_accept_timezone_aware_datetimes(repository):
    artist = await repository.create_many_and_return(Artist, [{"name": "Alice", "user_id": "7"}])
    when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    rows = await repository.create_many_and_return(
        Artwork,
        [{
            "title": "t",
            "external_id": "1",
            "artist_id": artist[0]["id"],
            "source_date": when,
            "directory_created_at": when,
        }],
        returning=("external_id",),
    )
    assert rows == [{"external_id": "1"}]


@pytest.mark.asyncio
async def test_update_artworks_keeps_image_count(repository):
    artwork_id = await _artwork(repository)
    await repository.create_many(
        Image, [{"path": "a/1_p0.jpg", "sort_order": 0, "artwork_id": artwork_id, "size": 1}]
    )
    await repository.refresh_image_counts([artwork_id])
    updated = await repository.update_artworks(
        [{"title": "new", "external_id": "1", "artist_id": None, "image_count": 0}]
    )
    assert updated == 1
    assert await repository.update_artworks([]) == 0
    rows = await repository.find_many(Artwork, columns=("title", "artist_id", "image_count"))
    assert rows == [{"title": "new", "artist_id": None, "image_count": 1}]
