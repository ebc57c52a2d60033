from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from audibible.bible_books import DEFAULT_VERSION, canonical_book_name
from audibible.chunking import count_sentences
from audibible.errors import TextSourceError

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_GATEWAY_URL = "https://www.biblegateway.com"
DEFAULT_LOCAL_API_URL = "http://localhost:3005/api"

_BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

PASSAGE_SELECTORS = (
    ".passage-text .std-text",
    ".passage-text",
    ".result-text-style-normal",
    ".text",
    "#passage-text",
)

# Inline apparatus that BibleGateway renders inside the passage markup.
_APPARATUS_SELECTORS = (
    "sup.versenum",
    "span.chapternum",
    "sup.footnote",
    "sup.crossreference",
    "div.footnotes",
    "div.crossrefs",
    "div.publisher-info-bottom",
    "h1",
    "h2",
    "h3",
    "h4",
)

_LEADING_VERSE_RE = re.compile(r"^\d+\s+", re.MULTILINE)
_INLINE_VERSE_RE = re.compile(r"\s+\d+\s+")
_FOOTNOTE_RE = re.compile(r"\[[a-z]\]", re.IGNORECASE)
_CROSS_REFERENCE_RE = re.compile(r"\([A-Z][a-z]*\s+\d+:\d+[^)]*\)")
_WHITESPACE_RE = re.compile(r"\s+")
_HEADING_PREFIX_RE = re.compile(r"^(Chapter \d+|Psalm \d+)\s*", re.IGNORECASE)
_READ_MORE_RE = re.compile(r"\s*(Read full chapter|Full Chapter|Continue reading)", re.IGNORECASE)
_SENTENCE_SPACING_RE = re.compile(r"([.!?])\s*([A-Z])")


@dataclass
class ChapterText:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class TextSource(Protocol):
    def fetch_chapter(self, book: str, chapter: int, version: str = DEFAULT_VERSION) -> ChapterText:
        ...


def clean_bible_text(raw_text: str) -> str:
    """Strip verse numbers, footnote markers and page furniture from passage text."""
    text = _LEADING_VERSE_RE.sub("", raw_text or "")
    text = _INLINE_VERSE_RE.sub(" ", text)
    text = _FOOTNOTE_RE.sub("", text)
    text = _CROSS_REFERENCE_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    text = _HEADING_PREFIX_RE.sub("", text)
    text = _READ_MORE_RE.sub("", text)
    text = _SENTENCE_SPACING_RE.sub(r"\1 \2", text)
    return text.strip()


def _text_metadata(text: str, **extra: Any) -> Dict[str, Any]:
    metadata: Dict[str, Any] = dict(extra)
    metadata["sentenceCount"] = count_sentences(text)
    metadata["characterCount"] = len(text)
    metadata["wordCount"] = len(text.split())
    return metadata


class BibleGatewayClient:
    """Scrapes chapter text from the public BibleGateway passage pages."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_GATEWAY_URL,
        delay: float = 1.0,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._delay = delay
        self._timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def _open_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=f"{self._base_url}/",
            headers=_BROWSER_HEADERS,
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    def fetch_chapter(self, book: str, chapter: int, version: str = DEFAULT_VERSION) -> ChapterText:
        passage = f"{book} {chapter}"
        logger.info("Fetching %s (%s) from BibleGateway", passage, version)

        if self._delay > 0:
            self._sleep(self._delay)

        try:
            with self._open_client() as client:
                response = client.get("passage/", params={"search": passage, "version": version})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TextSourceError(f"BibleGateway returned HTTP {status} for {passage}") from exc
        except httpx.HTTPError as exc:
            raise TextSourceError(f"Failed to fetch {passage}: {exc}") from exc

        raw_text = extract_passage_text(response.text)
        if not raw_text:
            raise TextSourceError(
                "Could not find passage text on the page. BibleGateway structure may have changed."
            )

        text = clean_bible_text(raw_text)
        if not text:
            raise TextSourceError(f"No readable text found for {passage}")

        metadata = _text_metadata(text, book=book, chapter=chapter, version=version, source="biblegateway")
        logger.info("Fetched %d sentences from %s", metadata["sentenceCount"], passage)
        return ChapterText(text=text, metadata=metadata)


def extract_passage_text(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    for selector in PASSAGE_SELECTORS:
        elements = soup.select(selector)
        if not elements:
            continue
        for element in elements:
            for apparatus in element.select(", ".join(_APPARATUS_SELECTORS)):
                apparatus.decompose()
        combined = " ".join(element.get_text(" ") for element in elements)
        if combined.strip():
            return combined
    return ""


class LocalBibleClient:
    """Reads chapters from a self-hosted Bible API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        resolved = base_url or os.environ.get("LOCAL_BIBLE_API_URL") or DEFAULT_LOCAL_API_URL
        self._base_url = resolved.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _open_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=f"{self._base_url}/",
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            with self._open_client() as client:
                response = client.get(path)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise TextSourceError(
                f"Bible API returned HTTP {exc.response.status_code} for {path}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TextSourceError(f"Bible API request failed: {exc}") from exc
        except ValueError as exc:
            raise TextSourceError("Bible API returned invalid JSON") from exc

        if not isinstance(payload, dict) or not payload.get("success"):
            raise TextSourceError("Bible API returned unsuccessful response")
        return payload

    def list_books(self) -> List[Dict[str, Any]]:
        payload = self._get("books")
        data = payload.get("data") or []
        return list(data) if isinstance(data, list) else []

    def fetch_chapter(self, book: str, chapter: int, version: str = DEFAULT_VERSION) -> ChapterText:
        logger.info("Fetching %s %s from local Bible API", book, chapter)
        payload = self._get(f"books/{book}/chapters/{chapter}")
        data = payload.get("data")
        verses = data.get("verses") if isinstance(data, dict) else None
        if not isinstance(verses, list):
            raise TextSourceError("Invalid API response format")

        text = " ".join(
            str(verse.get("text", "")).strip()
            for verse in verses
            if isinstance(verse, dict) and str(verse.get("text", "")).strip()
        )
        if not text:
            raise TextSourceError(f"No verses returned for {book} {chapter}")

        metadata = _text_metadata(
            text,
            book=canonical_book_name(book) or book,
            chapter=chapter,
            version=version,
            source="local",
            reference=data.get("reference") or f"{book} {chapter}",
            verseCount=len(verses),
        )
        return ChapterText(text=text, metadata=metadata)


def build_text_source(name: Optional[str] = None, *, local_base_url: Optional[str] = None) -> TextSource:
    selected = (name or os.environ.get("AUDIBIBLE_TEXT_SOURCE") or "gateway").strip().lower()
    if selected == "local":
        return LocalBibleClient(local_base_url)
    if selected not in {"gateway", "biblegateway"}:
        logger.warning("Unknown text source %r; falling back to BibleGateway", selected)
    return BibleGatewayClient()
