"""Static metadata for the 66 books of the Protestant canon."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

OLD_TESTAMENT: Dict[str, int] = {
    "Genesis": 50,
    "Exodus": 40,
    "Leviticus": 27,
    "Numbers": 36,
    "Deuteronomy": 34,
    "Joshua": 24,
    "Judges": 21,
    "Ruth": 4,
    "1 Samuel": 31,
    "2 Samuel": 24,
    "1 Kings": 22,
    "2 Kings": 25,
    "1 Chronicles": 29,
    "2 Chronicles": 36,
    "Ezra": 10,
    "Nehemiah": 13,
    "Esther": 10,
    "Job": 42,
    "Psalms": 150,
    "Proverbs": 31,
    "Ecclesiastes": 12,
    "Song of Solomon": 8,
    "Isaiah": 66,
    "Jeremiah": 52,
    "Lamentations": 5,
    "Ezekiel": 48,
    "Daniel": 12,
    "Hosea": 14,
    "Joel": 3,
    "Amos": 9,
    "Obadiah": 1,
    "Jonah": 4,
    "Micah": 7,
    "Nahum": 3,
    "Habakkuk": 3,
    "Zephaniah": 3,
    "Haggai": 2,
    "Zechariah": 14,
    "Malachi": 4,
}

NEW_TESTAMENT: Dict[str, int] = {
    "Matthew": 28,
    "Mark": 16,
    "Luke": 24,
    "John": 21,
    "Acts": 28,
    "Romans": 16,
    "1 Corinthians": 16,
    "2 Corinthians": 13,
    "Galatians": 6,
    "Ephesians": 6,
    "Philippians": 4,
    "Colossians": 4,
    "1 Thessalonians": 5,
    "2 Thessalonians": 3,
    "1 Timothy": 6,
    "2 Timothy": 4,
    "Titus": 3,
    "Philemon": 1,
    "Hebrews": 13,
    "James": 5,
    "1 Peter": 5,
    "2 Peter": 3,
    "1 John": 5,
    "2 John": 1,
    "3 John": 1,
    "Jude": 1,
    "Revelation": 22,
}

BIBLE_BOOKS: Dict[str, int] = {**OLD_TESTAMENT, **NEW_TESTAMENT}

_ALIASES: Dict[str, str] = {
    "song of songs": "Song of Solomon",
    "psalm": "Psalms",
}

_LOOKUP: Dict[str, str] = {name.casefold(): name for name in BIBLE_BOOKS}
_LOOKUP.update(_ALIASES)

SUPPORTED_VERSIONS: List[Dict[str, str]] = [
    {"code": "NIV", "name": "New International Version"},
    {"code": "ESV", "name": "English Standard Version"},
    {"code": "KJV", "name": "King James Version"},
    {"code": "NASB", "name": "New American Standard Bible"},
    {"code": "NLT", "name": "New Living Translation"},
    {"code": "CSB", "name": "Christian Standard Bible"},
    {"code": "WEB", "name": "World English Bible"},
    {"code": "NKJV", "name": "New King James Version"},
    {"code": "MSG", "name": "The Message"},
    {"code": "AMP", "name": "Amplified Bible"},
    {"code": "CEV", "name": "Contemporary English Version"},
    {"code": "HCSB", "name": "Holman Christian Standard Bible"},
    {"code": "NASB1995", "name": "New American Standard Bible 1995"},
    {"code": "NET", "name": "New English Translation"},
    {"code": "RSV", "name": "Revised Standard Version"},
    {"code": "ASV", "name": "American Standard Version"},
    {"code": "YLT", "name": "Young's Literal Translation"},
    {"code": "DARBY", "name": "Darby Translation"},
    {"code": "GNT", "name": "Good News Translation"},
    {"code": "NCV", "name": "New Century Version"},
]

DEFAULT_VERSION = "WEB"


@dataclass(frozen=True)
class ChapterValidation:
    valid: bool
    message: str
    max_chapters: Optional[int] = None

    def as_dict(self) -> Dict[str, object]:
        return {"valid": self.valid, "message": self.message, "maxChapters": self.max_chapters}


def canonical_book_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    return _LOOKUP.get(" ".join(str(name).split()).casefold())


def get_book_names() -> List[str]:
    return list(BIBLE_BOOKS)


def get_chapter_count(book: Optional[str]) -> Optional[int]:
    canonical = canonical_book_name(book)
    if canonical is None:
        return None
    return BIBLE_BOOKS[canonical]


def search_books(query: Optional[str]) -> List[str]:
    if not query:
        return get_book_names()
    needle = query.casefold()
    return [name for name in BIBLE_BOOKS if needle in name.casefold()]


def is_supported_version(code: Optional[str]) -> bool:
    if not code:
        return False
    upper = code.upper()
    return any(entry["code"] == upper for entry in SUPPORTED_VERSIONS)


def validate_chapter(book: Optional[str], chapter: Optional[int]) -> ChapterValidation:
    if not book:
        return ChapterValidation(False, "Please select a Bible book first")

    max_chapters = get_chapter_count(book)
    if max_chapters is None:
        return ChapterValidation(False, f"Unknown book: {book}")

    if not chapter or chapter < 1:
        return ChapterValidation(False, "Chapter number must be at least 1", max_chapters)

    if chapter > max_chapters:
        suffix = "" if max_chapters == 1 else "s"
        return ChapterValidation(False, f"{book} only has {max_chapters} chapter{suffix}", max_chapters)

    return ChapterValidation(True, f"{book} {chapter} is valid", max_chapters)


def is_valid_reference(book: Optional[str], chapter: Optional[int]) -> bool:
    return validate_chapter(book, chapter).valid
