"""End-to-end scan tests against a temporary library and database."""

from pathlib import Path

import pytest

from artshelf.models import Artist, Artwork, ArtworkTag, Image, Tag
from artshelf.records import ScanOptions, ScanPhase
from artshelf.scanner import ScanOrchestrator, scan_library

from conftest import write_media, write_meta


async def _scan(config, engine, **options):
    orchestrator = ScanOrchestrator(config, engine=engine)
    return await orchestrator.scan(ScanOptions(**options))


async def _images(repository, external_id):
    artwork = await repository.find_many(
        Artwork, Artwork.external_id == external_id, columns=("id", "image_count")
    )
    rows = await repository.find_many(
        Image, Image.artwork_id == artwork[0]["id"], columns=("path", "sort_order")
    )
    return artwork[0]["image_count"], sorted(rows, key=lambda r: r["sort_order"])


@pytest.mark.asyncio
async def test_single_artwork_scenario(config, engine, repository, library):
    """Test that one metadata file with two pages yields the full row set."""
    folder = library / "alice-7"
    write_meta(folder, "123", user="Alice", user_id="7", tags=("a", "b"))
    write_media(folder, "123_p0.jpg", "123_p1.jpg")

    result = await _scan(config, engine)

    assert result.errors == []
    assert result.total_artworks == 1
    assert result.new_artworks == 1
    assert result.new_images == 2
    assert result.new_artists == 1
    assert result.new_tags == 2
    artists = await repository.find_many(Artist, columns=("name", "user_id"))
    assert artists == [{"name": "Alice", "user_id": "7"}]
    image_count, images = await _images(repository, "123")
    assert image_count == 2
    assert [i["sort_order"] for i in images] == [0, 1]
    assert [i["path"] for i in images] == ["alice-7/123_p0.jpg", "alice-7/123_p1.jpg"]
    assert await repository.count(Tag) == 2
    assert await repository.count(ArtworkTag) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("scan_type", ["unified", "full"])
async def test_duplicate_artwork_id_scenario(config, engine, repository, library, scan_type):
    """Test that an id claimed by two directories is stored once and reported once."""
    for name in ("a", "b"):
        write_meta(library / name, "99")
        write_media(library / name, "99_p0.jpg")

    result = await _scan(config, engine, scan_type=scan_type)

    assert await repository.count(Artwork) == 1
    assert len(result.errors) == 1
    error = result.errors[0]
    assert "99" in error
    assert str((library / "a" / "99-meta.txt").resolve()) in error
    assert str((library / "b" / "99-meta.txt").resolve()) in error
    _, images = await _images(repository, "99")
    assert [i["path"] for i in images] == ["a/99_p0.jpg"]


@pytest.mark.asyncio
async def test_page_gaps_are_preserved(config, engine, repository, library):
    write_meta(library / "gallery", "5")
    write_media(library / "gallery", "5_p0.png", "5_p3.png", "5_p1.png")

    result = await _scan(config, engine)

    assert result.errors == []
    image_count, images = await _images(repository, "5")
    assert image_count == 3
    assert [i["sort_order"] for i in images] == [0, 1, 3]


@pytest.mark.asyncio
async def test_second_scan_is_idempotent(config, engine, repository, library):
    for artwork_id in ("1", "2", "3"):
        write_meta(library / "alice-7", artwork_id)
        write_media(library / "alice-7", f"{artwork_id}_p0.jpg")

    first = await _scan(config, engine)
    second = await _scan(config, engine)

    assert first.new_artworks == 3
    assert second.new_artworks == 0
    assert second.new_images == 0
    assert second.skipped_artworks == 3
    assert second.errors == []
    assert await repository.count(Image) == 3


@pytest.mark.asyncio
async def test_force_update_reingests(config, engine, repository, library):
    write_meta(library / "alice-7", "1")
    write_media(library / "alice-7", "1_p0.jpg", "1_p1.jpg")

    await _scan(config, engine)
    forced = await _scan(config, engine, force_update=True)

    assert forced.new_artworks == 1
    assert forced.new_images == 2
    assert forced.skipped_artworks == 0
    assert await repository.count(Artwork) == 1
    assert await repository.count(Artist) == 1


@pytest.mark.asyncio
async def test_metadata_force_update_keeps_images(config, engine, repository, library):
    """Test that a forced metadata-only scan refreshes artwork fields without touching media."""
    folder = library / "alice-7"
    write_meta(folder, "123", tags=("a", "b"))
    write_media(folder, "123_p0.jpg", "123_p1.jpg")
    await _scan(config, engine)

    write_meta(folder, "123", title="Renamed", tags=("c",))
    result = await _scan(config, engine, scan_type="metadata", force_update=True)

    assert result.errors == []
    assert result.new_artworks == 0
    assert result.updated_artworks == 1
    assert result.new_tags == 1
    image_count, images = await _images(repository, "123")
    assert image_count == 2
    assert [i["sort_order"] for i in images] == [0, 1]
    rows = await repository.find_many(Artwork, columns=("title",))
    assert rows == [{"title": "Renamed"}]
    assert await repository.count(ArtworkTag) == 1


@pytest.mark.asyncio
async def test_metadata_then_media_strategies(config, engine, repository, library):
    write_meta(library / "alice-7", "10")
    write_media(library / "alice-7", "10_p0.jpg", "10_p1.jpg")

    metadata = await _scan(config, engine, scan_type="metadata")
    assert metadata.new_artworks == 1
    assert metadata.new_images == 0
    image_count, _ = await _images(repository, "10")
    assert image_count == 0

    media = await _scan(config, engine, scan_type="media")
    assert media.new_images == 2
    assert media.errors == []
    image_count, images = await _images(repository, "10")
    assert image_count == 2
    assert len(images) == 2


@pytest.mark.asyncio
async def test_full_strategy(config, engine, repository, library):
    write_meta(library / "alice-7", "11")
    write_media(library / "alice-7", "11_p0.jpg")

    progress = []
    result = await _scan(config, engine, scan_type="full", on_progress=progress.append)

    assert result.errors == []
    assert result.new_artworks == 1
    assert result.new_images == 1
    assert progress[-1].phase == ScanPhase.COMPLETE
    assert progress[-1].percentage == 100.0


@pytest.mark.asyncio
async def test_progress_is_monotonic(config, engine, library):
    for artwork_id in ("1", "2"):
        write_meta(library / "alice-7", artwork_id)
        write_media(library / "alice-7", f"{artwork_id}.jpg")

    progress = []
    await _scan(config, engine, on_progress=progress.append)

    percentages = [p.percentage for p in progress]
    assert percentages == sorted(percentages)
    assert progress[0].phase == ScanPhase.COUNTING
    assert progress[-1].phase == ScanPhase.COMPLETE
    assert progress[-1].percentage == 100.0


@pytest.mark.asyncio
async def test_blank_user_takes_name_from_directory(config, engine, repository, library):
    write_meta(library / "bob-42", "20", user=None, user_id="42")
    write_media(library / "bob-42", "20_p0.jpg")

    result = await _scan(config, engine)

    assert result.errors == []
    artists = await repository.find_many(Artist, columns=("name", "username", "user_id"))
    assert artists == [{"name": "bob", "username": None, "user_id": "42"}]


@pytest.mark.asyncio
async def test_bad_items_are_reported_and_skipped(config, engine, repository, library):
    write_meta(library / "ok", "1")
    write_media(library / "ok", "1_p0.jpg")
    write_meta(library / "bad", "2", user_id=None)
    write_media(library / "bad", "2_p0.jpg")
    write_meta(library / "empty", "3")

    result = await _scan(config, engine)

    assert result.new_artworks == 1
    kinds = sorted(error.split(":")[0] for error in result.errors)
    assert kinds == ["association", "metadata"]
    assert any("missing USERID" in error for error in result.errors)
    assert any("artwork 3" in error for error in result.errors)


@pytest.mark.asyncio
async def test_cleanup_removes_vanished_media(config, engine, repository, library):
    folder = library / "alice-7"
    write_meta(folder, "1")
    p0, p1 = write_media(folder, "1_p0.jpg", "1_p1.jpg")
    await _scan(config, engine)

    p1.unlink()
    result = await _scan(config, engine)
    assert result.removed_artworks == 0
    image_count, images = await _images(repository, "1")
    assert image_count == 1
    assert [i["sort_order"] for i in images] == [0]

    p0.unlink()
    result = await _scan(config, engine)
    assert result.removed_artworks == 1
    assert await repository.count(Artwork) == 0
    assert await repository.count(Artist) == 0
    assert await repository.count(Tag) == 0


@pytest.mark.asyncio
async def test_subfolder_scan(config, engine, repository, library):
    write_meta(library / "alice-7", "1")
    write_media(library / "alice-7", "1_p0.jpg")
    write_meta(library / "bob-8", "2", user="Bob", user_id="8")
    write_media(library / "bob-8", "2_p0.jpg")

    result = await _scan(config, engine, scan_path=(library / "bob-8").resolve())

    assert result.new_artworks == 1
    rows = await repository.find_many(Artwork, columns=("external_id",))
    assert rows == [{"external_id": "2"}]
    _, images = await _images(repository, "2")
    assert images[0]["path"] == "bob-8/2_p0.jpg"


@pytest.mark.asyncio
async def test_unsupported_strategy(config, engine):
    result = await _scan(config, engine, scan_type="turbo")
    assert result.errors == ["strategy: unsupported scan strategy 'turbo'"]
    assert result.new_artworks == 0


@pytest.mark.asyncio
async def test_relative_scan_path_is_rejected(config, engine):
    result = await _scan(config, engine, scan_path=Path("relative/dir"))
    assert len(result.errors) == 1
    assert result.errors[0].startswith("validation: scan path must be absolute")


@pytest.mark.asyncio
async def test_invalid_batch_size_is_rejected(config, engine, library):
    result = await _scan(config, engine, scan_path=library, batch_size=-1)
    assert result.errors == ["validation: batch size must be >= 1"]


@pytest.mark.asyncio
async def test_missing_scan_root(config, engine, library):
    result = await _scan(config, engine, scan_path=library / "missing")
    assert len(result.errors) == 1
    assert result.errors[0].startswith("scan-root: scan path does not exist")


@pytest.mark.asyncio
async def test_cancel_stops_before_ingest(config, engine, repository, library):
    write_meta(library / "alice-7", "1")
    write_media(library / "alice-7", "1_p0.jpg")
    orchestrator = ScanOrchestrator(config, engine=engine)

    def cancel_on_first(progress):
        orchestrator.cancel()

    result = await orchestrator.scan(ScanOptions(on_progress=cancel_on_first))

    assert result.cancelled
    assert result.new_artworks == 0
    assert await repository.count(Artwork) == 0


@pytest.mark.asyncio
async def test_orchestrator_helpers(config, engine, library):
    write_meta(library / "alice-7", "1")
    orchestrator = ScanOrchestrator(config, engine=engine)

    assert [s["type"] for s in orchestrator.available_strategies()] == [
        "metadata", "media", "full", "unified",
    ]
    assert await orchestrator.estimate(ScanOptions(scan_type="full")) > 0

    await orchestrator.scan(ScanOptions())
    assert orchestrator.last_report is not None
    assert orchestrator.state.startswith("cleaned-up")


@pytest.mark.asyncio
async def test_scan_library_entry_point(config, engine, repository, library):
    write_meta(library / "alice-7", "1")
    write_media(library / "alice-7", "1_p0.jpg")

    result = await scan_library(config, engine=engine, scan_type="unified")

    assert result.new_artworks == 1
    assert result.processing_time_ms >= 0
    assert result.as_dict()["new_images"] == 1
