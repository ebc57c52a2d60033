from __future__ import annotations

from audibible.bible_books import (
    BIBLE_BOOKS,
    NEW_TESTAMENT,
    OLD_TESTAMENT,
    canonical_book_name,
    get_chapter_count,
    is_supported_version,
    is_valid_reference,
    search_books,
    validate_chapter,
)


def test_canon_has_sixty_six_books():
    assert len(OLD_TESTAMENT) == 39
    assert len(NEW_TESTAMENT) == 27
    assert len(BIBLE_BOOKS) == 66
    assert sum(BIBLE_BOOKS.values()) == 1189


def test_book_lookup_is_case_insensitive_and_accepts_aliases():
    assert canonical_book_name("genesis") == "Genesis"
    assert canonical_book_name("  1   samuel ") == "1 Samuel"
    assert canonical_book_name("Song of Songs") == "Song of Solomon"
    assert canonical_book_name("Psalm") == "Psalms"
    assert canonical_book_name("Hezekiah") is None
    assert get_chapter_count("psalms") == 150
    assert get_chapter_count(None) is None


def test_search_books_matches_substrings():
    assert search_books("john") == ["John", "1 John", "2 John", "3 John"]
    assert len(search_books("")) == 66


def test_validate_chapter_messages():
    assert validate_chapter(None, 1).message == "Please select a Bible book first"
    assert validate_chapter("Hezekiah", 1).message == "Unknown book: Hezekiah"

    low = validate_chapter("Genesis", 0)
    assert not low.valid
    assert low.message == "Chapter number must be at least 1"
    assert low.max_chapters == 50

    assert validate_chapter("Jude", 2).message == "Jude only has 1 chapter"
    assert validate_chapter("Ruth", 5).message == "Ruth only has 4 chapters"

    ok = validate_chapter("Genesis", 50)
    assert ok.valid
    assert ok.as_dict() == {"valid": True, "message": "Genesis 50 is valid", "maxChapters": 50}


def test_is_valid_reference():
    assert is_valid_reference("Genesis", 1)
    assert not is_valid_reference("Genesis", 51)
    assert not is_valid_reference("Genesis", None)


def test_supported_versions():
    assert is_supported_version("web")
    assert is_supported_version("KJV")
    assert not is_supported_version("XYZ")
    assert not is_supported_version(None)
