from typing import Any, Mapping, Optional

from audibible.bible_books import DEFAULT_VERSION, canonical_book_name, get_chapter_count, is_valid_reference
from audibible.errors import ValidationError
from audibible.tts_fish import FishCredentials
from audibible.webui.service import TranscriptionParams


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"true", "1", "yes", "on"}
    if value is None:
        return default
    return bool(value)


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_chapter(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_max_sentences(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("maxSentences must be a positive integer")
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ValidationError("maxSentences must be a positive integer") from exc
    if parsed < 1:
        raise ValidationError("maxSentences must be a positive integer")
    return parsed


def build_params_from_payload(payload: Mapping[str, Any]) -> TranscriptionParams:
    """Validate a transcription request body and turn it into job parameters."""
    book = _optional_text(payload.get("book"))
    full_book = coerce_bool(payload.get("transcribeFullBook"), False)
    raw_chapter = payload.get("chapter")

    if not book:
        raise ValidationError("Missing required parameter: book")
    if not full_book and _optional_text(raw_chapter) is None:
        raise ValidationError("Missing required parameter: chapter (or enable full book transcription)")

    credentials = FishCredentials.resolve(
        _optional_text(payload.get("fishApiKey")),
        _optional_text(payload.get("voiceModelId")),
    )
    if not credentials.is_complete:
        raise ValidationError(
            "Fish.Audio credentials not found. Please configure them in the .env file or via the web interface."
        )

    chapter: Optional[int] = None
    if full_book:
        if not get_chapter_count(book):
            raise ValidationError(f"Invalid Bible book: {book}")
    else:
        chapter = parse_chapter(raw_chapter)
        if chapter is None or not is_valid_reference(book, chapter):
            raise ValidationError(f"Invalid Bible reference: {book} {raw_chapter}")

    create_video = coerce_bool(payload.get("createVideo"), False)
    return TranscriptionParams(
        book=canonical_book_name(book) or book,
        chapter=chapter,
        version=_optional_text(payload.get("version")) or DEFAULT_VERSION,
        max_sentences=parse_max_sentences(payload.get("maxSentences")),
        create_video=create_video,
        background_image_path=_optional_text(payload.get("backgroundImagePath")) if create_video else None,
        credentials=credentials,
        transcribe_full_book=full_book,
    )
