from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from audibible.chunking import chunk_text
from audibible.errors import SynthesisError

logger = logging.getLogger(__name__)

DEFAULT_FISH_AUDIO_URL = "https://api.fish.audio/v1"
DEFAULT_SYNTHESIS_TIMEOUT = 60.0
DEFAULT_SYNTHESIS_DELAY = 1.0

_STATUS_MESSAGES = {
    400: "Invalid request parameters",
    401: "Invalid Fish.Audio API key",
    429: "Rate limit exceeded. Please try again later.",
}

ProgressCallback = Callable[[float, str], None]


@dataclass(frozen=True)
class FishCredentials:
    api_key: str
    voice_model_id: str

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.voice_model_id)

    @classmethod
    def resolve(
        cls,
        api_key: Optional[str] = None,
        voice_model_id: Optional[str] = None,
    ) -> "FishCredentials":
        """Prefer explicit values and fall back to the environment."""
        return cls(
            api_key=(api_key or os.environ.get("FISH_AUDIO_API_KEY") or "").strip(),
            voice_model_id=(voice_model_id or os.environ.get("FISH_AUDIO_VOICE_MODEL_ID") or "").strip(),
        )

    def __repr__(self) -> str:
        return f"FishCredentials(api_key='***', voice_model_id={self.voice_model_id!r})"


@dataclass
class ChunkSynthesisResult:
    audio_paths: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def introduction_text(book: str, chapter: int) -> str:
    return f"{book}, Chapter {chapter}"


class FishAudioClient:
    """Text-to-speech client for the Fish.Audio REST API."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_SYNTHESIS_TIMEOUT,
        delay: float = DEFAULT_SYNTHESIS_DELAY,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        resolved = base_url or os.environ.get("FISH_AUDIO_BASE_URL") or DEFAULT_FISH_AUDIO_URL
        self._base_url = resolved.rstrip("/")
        self._timeout = timeout
        self._delay = delay
        self._transport = transport
        self._sleep = sleep

    def _open_client(self, credentials: FishCredentials) -> httpx.Client:
        headers = {
            "Authorization": f"Bearer {credentials.api_key}",
            "Content-Type": "application/json",
        }
        return httpx.Client(
            base_url=f"{self._base_url}/",
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def synthesize(self, text: str, credentials: FishCredentials, output_path: Path) -> Path:
        if not credentials.is_complete:
            raise SynthesisError("Fish.Audio API key and voice model ID are required")

        payload = {
            "text": text,
            "reference_id": credentials.voice_model_id,
            "format": "mp3",
            "mp3_bitrate": 128,
            "normalize": True,
            "latency": "normal",
        }
        logger.debug("Synthesizing %d characters to %s", len(text), output_path)
        try:
            with self._open_client(credentials) as client:
                response = client.post("tts", json=payload, headers={"Accept": "audio/mpeg"})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = _STATUS_MESSAGES.get(status)
            if message is None:
                detail = (exc.response.text or "").strip()[:200]
                message = f"API error: {status} - {detail}" if detail else f"API error: {status}"
            raise SynthesisError(message) from exc
        except httpx.HTTPError as exc:
            raise SynthesisError(f"Fish.Audio request failed: {exc}") from exc

        audio = response.content
        if not audio:
            raise SynthesisError("Fish.Audio returned an empty audio response")

        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(audio)
        except OSError as exc:
            raise SynthesisError(f"Failed to save synthesized audio: {exc}") from exc
        return output_path

    def synthesize_introduction(
        self,
        book: str,
        chapter: int,
        credentials: FishCredentials,
        output_dir: Path,
    ) -> Path:
        text = introduction_text(book, chapter)
        logger.info("Generating chapter introduction: %r", text)
        return self.synthesize(text, credentials, Path(output_dir) / "intro.mp3")

    def synthesize_chunks(
        self,
        chunks: Sequence[str],
        credentials: FishCredentials,
        output_dir: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChunkSynthesisResult:
        """Synthesize each chunk in order, pausing between requests.

        A failing chunk is recorded as a warning; only when every chunk fails
        is :class:`SynthesisError` raised.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        result = ChunkSynthesisResult()
        total = len(chunks)

        for index, chunk in enumerate(chunks):
            if on_progress:
                on_progress(round(index / total * 100), f"Generating audio for chunk {index + 1}/{total}...")
            try:
                path = self.synthesize(chunk, credentials, output_dir / f"chunk_{index + 1}.mp3")
            except SynthesisError as exc:
                logger.warning("Chunk %d failed: %s", index + 1, exc)
                result.warnings.append(f"Chunk {index + 1}: {exc}")
            else:
                result.audio_paths.append(path)

            if index < total - 1 and self._delay > 0:
                self._sleep(self._delay)

        if on_progress:
            on_progress(100, "All chunks processed")

        if total and not result.audio_paths:
            raise SynthesisError(f"All chunks failed: {'; '.join(result.warnings)}")
        return result

    def validate_credentials(self, credentials: FishCredentials, scratch_dir: Path) -> Tuple[bool, Optional[str]]:
        scratch_root = Path(scratch_dir)
        scratch_root.mkdir(parents=True, exist_ok=True)
        # One directory per call; concurrent checks must not share files.
        scratch = Path(tempfile.mkdtemp(prefix="credential-check-", dir=scratch_root))
        try:
            self.synthesize("Testing API credentials.", credentials, scratch / "test.mp3")
        except SynthesisError as exc:
            return False, str(exc)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
        return True, None

    def voice_model_info(self, credentials: FishCredentials) -> Dict[str, Any]:
        try:
            with self._open_client(credentials) as client:
                response = client.get(f"models/{credentials.voice_model_id}")
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            raise SynthesisError(f"API returned status {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise SynthesisError(f"Voice model lookup failed: {exc}") from exc


def estimate_processing_seconds(
    text: str,
    *,
    max_sentences: Optional[int] = None,
    per_chunk: float = 5.0,
    delay: float = DEFAULT_SYNTHESIS_DELAY,
) -> float:
    """Rough wall-clock cost of synthesizing ``text``: a fixed time per chunk plus pacing."""
    chunks = chunk_text(text, max_sentences)
    if not chunks:
        return 0.0
    return len(chunks) * per_chunk + (len(chunks) - 1) * delay


def estimate_audio_seconds(text: str, *, words_per_minute: int = 155) -> int:
    words = len(text.split())
    return round(words / words_per_minute * 60)
