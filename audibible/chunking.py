from __future__ import annotations

import re
from itertools import zip_longest
from typing import Iterator, List, Optional

from audibible.utils import env_int

DEFAULT_MAX_SENTENCES = 5
DEFAULT_MAX_CHUNK_CHARS = 4500

# A decimal point ("1.5s" inside a break tag) is not a sentence terminator.
_TERMINATOR_REGEX = re.compile(r"([.!?]+(?!\d)\s*)")
_WHITESPACE_REGEX = re.compile(r"\s+")

_LONG_PAUSE_REGEX = re.compile(r"/{3,}")
_MEDIUM_PAUSE_REGEX = re.compile(r"//")
_SHORT_PAUSE_REGEX = re.compile(r"/")
_STRONG_EMPHASIS_REGEX = re.compile(r"\*\*(.*?)\*\*")
_MODERATE_EMPHASIS_REGEX = re.compile(r"\*(.*?)\*")
_REDUCED_EMPHASIS_REGEX = re.compile(r"_(.*?)_")

# Tags introduced by preprocess_text; replaced before the single-slash pass.
_BREAK_PLACEHOLDER = "\x00BREAK:{}\x00"
_BREAK_PLACEHOLDER_REGEX = re.compile("\x00BREAK:([0-9.]+s)\x00")


def default_max_chunk_chars() -> int:
    return env_int("CHUNK_SIZE_LIMIT", DEFAULT_MAX_CHUNK_CHARS)


def preprocess_text(text: Optional[str]) -> str:
    """Convert pause and emphasis markup into speech tags.

    ``///`` (or longer) is a 1.5 second pause, ``//`` one second and ``/`` half
    a second. ``**bold**``, ``*italic*`` and ``_underline_`` become strong,
    moderate and reduced emphasis.
    """
    if not text:
        return text or ""

    processed = _LONG_PAUSE_REGEX.sub(_BREAK_PLACEHOLDER.format("1.5s"), text)
    processed = _MEDIUM_PAUSE_REGEX.sub(_BREAK_PLACEHOLDER.format("1s"), processed)
    processed = _SHORT_PAUSE_REGEX.sub(_BREAK_PLACEHOLDER.format("0.5s"), processed)
    processed = _BREAK_PLACEHOLDER_REGEX.sub(r'<break time="\1"/>', processed)

    processed = _STRONG_EMPHASIS_REGEX.sub(r'<emphasis level="strong">\1</emphasis>', processed)
    processed = _MODERATE_EMPHASIS_REGEX.sub(r'<emphasis level="moderate">\1</emphasis>', processed)
    processed = _REDUCED_EMPHASIS_REGEX.sub(r'<emphasis level="reduced">\1</emphasis>', processed)
    return processed


def _iter_sentences(text: str) -> Iterator[str]:
    parts = _TERMINATOR_REGEX.split(text)
    pending: Optional[str] = None
    for body, terminator in zip_longest(parts[0::2], parts[1::2], fillvalue=""):
        if not body.strip():
            # Stray punctuation with no words in front of it belongs to the previous sentence.
            if pending is not None and terminator:
                pending += terminator
            continue
        if pending is not None:
            yield pending
        pending = body + (terminator or ".")
    if pending is not None:
        yield pending


def split_sentences(text: Optional[str]) -> List[str]:
    """Split ``text`` into sentences that keep their terminators and trailing space."""
    if not text or not text.strip():
        return []
    return list(_iter_sentences(text))


def count_sentences(text: Optional[str]) -> int:
    return len(split_sentences(text))


def normalize_whitespace(value: str) -> str:
    return _WHITESPACE_REGEX.sub(" ", value).strip()


def _flush(current: List[str], chunks: List[str]) -> None:
    joined = "".join(current).strip()
    if joined:
        chunks.append(joined)
    current.clear()


def chunk_text(
    text: Optional[str],
    max_sentences: Optional[int] = None,
    max_chars: Optional[int] = None,
    *,
    preprocess: bool = True,
) -> List[str]:
    """Group whole sentences into speakable chunks.

    With a positive ``max_sentences`` every chunk holds at most that many
    sentences. Otherwise chunks are packed up to ``max_chars`` characters; a
    single sentence longer than the limit still becomes its own chunk.
    Markup inserted by :func:`preprocess_text` counts toward the size.
    """
    source = preprocess_text(text) if preprocess else (text or "")
    sentences = split_sentences(source)
    chunks: List[str] = []
    current: List[str] = []

    if max_sentences and max_sentences > 0:
        for sentence in sentences:
            if len(current) >= max_sentences:
                _flush(current, chunks)
            current.append(sentence)
        _flush(current, chunks)
        return chunks

    limit = max_chars if max_chars and max_chars > 0 else default_max_chunk_chars()
    current_length = 0
    for sentence in sentences:
        if current and current_length + len(sentence) > limit:
            _flush(current, chunks)
            current_length = 0
        current.append(sentence)
        current_length += len(sentence)
    _flush(current, chunks)
    return chunks
