"""Tests for metadata file parsing and validation."""

from datetime import datetime, timedelta, timezone

import pytest

from artshelf.errors import MetadataError
from artshelf.metadata import (
    extract_artwork_id,
    is_metadata_file,
    load_metadata_file,
    parse_metadata_text,
    parse_date,
    parse_tags,
    read_metadata_file,
    validate_metadata,
)

SAMPLE = """ID
123

URL
https://www.pixiv.net/artworks/123

USER
Alice

USERID
7

TITLE
Sunset   over
the bay

DESCRIPTION
First line
Second line

TAGS
#landscape #sky #landscape

XRESTRICT
AllAges

AI
No

BOOKMARK
1,024

DATE
2023-05-01T12:30:00

SOMETHING
ignored
"""


def test_parse_metadata_text_reads_all_known_blocks():
    """Test that every known block lands in its field."""
    meta = parse_metadata_text(SAMPLE)
    assert meta.id == "123"
    assert meta.user == "Alice"
    assert meta.user_id == "7"
    assert meta.title == "Sunset over the bay"
    assert meta.description == "First line\nSecond line"
    assert meta.tags == ["landscape", "sky"]
    assert meta.ai is False
    assert meta.bookmark == 1024
    assert meta.date == datetime(2023, 5, 1, 12, 30, tzinfo=timezone.utc)
    assert not meta.is_restricted


def test_parse_metadata_text_strips_bom():
    meta = parse_metadata_text("\ufeffID\n5\n\nTITLE\nx\n")
    assert meta.id == "5"


def test_parse_tags_drops_hashes_and_repeats():
    assert parse_tags("#a b  #a #") == ["a", "b"]


def test_parse_date_is_timezone_aware():
    assert parse_date("2023-05-01") == datetime(2023, 5, 1, tzinfo=timezone.utc)
    assert parse_date("2023/05/01 08:15").tzinfo is timezone.utc
    offset = parse_date("2023-05-01T12:30:00+09:00")
    assert offset.utcoffset() == timedelta(hours=9)
    assert parse_date("someday") is None


def test_tags_are_case_sensitive():
    assert parse_tags("#Sky #sky") == ["Sky", "sky"]


@pytest.mark.parametrize(
    "name, expected",
    [
        ("123-meta.txt", "123"),
        ("123-META.TXT", "123"),
        ("abc-meta.txt", None),
        ("123_p0.jpg", None),
        ("123-meta.txt.bak", None),
    ],
)
def test_extract_artwork_id(name, expected):
    assert extract_artwork_id(name) == expected
    assert is_metadata_file(name) is (expected is not None)


def test_validate_metadata_requires_id_userid_and_title():
    """Test that missing required fields are reported, USER is optional."""
    problems = validate_metadata(parse_metadata_text("USER\nAlice\n"))
    assert "missing ID" in problems
    assert "missing USERID" in problems
    assert "missing TITLE" in problems
    assert not any("USER " in p for p in problems)


def test_validate_metadata_rejects_bad_values():
    meta = parse_metadata_text(
        "ID\n12a\n\nUSERID\n7\n\nTITLE\nt\n\nURL\nftp://example.com/x\n"
    )
    problems = validate_metadata(meta, expected_id="12")
    assert any("not numeric" in p for p in problems)
    assert any("does not match filename" in p for p in problems)
    assert any("invalid URL" in p for p in problems)


def test_load_metadata_file_raises_metadata_error(tmp_path):
    path = tmp_path / "77-meta.txt"
    path.write_text("ID\n77\n\nTITLE\nNo user id\n", encoding="utf-8")
    with pytest.raises(MetadataError) as excinfo:
        load_metadata_file(path)
    assert "missing USERID" in str(excinfo.value)
    assert excinfo.value.describe().startswith("metadata: ")


@pytest.mark.asyncio
async def test_read_metadata_file(tmp_path):
    path = tmp_path / "123-meta.txt"
    path.write_text(SAMPLE, encoding="utf-8")
    meta = await read_metadata_file(path)
    assert meta.id == "123"
    assert meta.tags == ["landscape", "sky"]
