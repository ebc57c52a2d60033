from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from audibible import utils
from audibible.audio import AudioMetadata, ChapterAudio, list_output_files, output_timestamp_token
from audibible.errors import SynthesisError, TextSourceError, VideoRenderError
from audibible.text_sources import ChapterText
from audibible.tts_fish import ChunkSynthesisResult, FishCredentials
from audibible.video import ChapterVideo

GENESIS_OPENING = (
    "In the beginning, God created the heavens and the earth. "
    "The earth was formless and empty. "
    "God said, let there be light, and there was light."
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("AUDIBIBLE_SETTINGS_DIR", str(tmp_path / "settings"))
    monkeypatch.setenv("AUDIBIBLE_TEMP_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("AUDIBIBLE_OUTPUT_DIR", str(tmp_path / "output"))
    for name in ("FISH_AUDIO_API_KEY", "FISH_AUDIO_VOICE_MODEL_ID", "AUDIBIBLE_TEXT_SOURCE", "CHUNK_SIZE_LIMIT"):
        monkeypatch.delenv(name, raising=False)
    for cached in (utils.get_user_settings_dir, utils.get_user_cache_root, utils.get_user_output_root):
        cached.cache_clear()
    yield
    for cached in (utils.get_user_settings_dir, utils.get_user_cache_root, utils.get_user_output_root):
        cached.cache_clear()


class StubTextSource:
    def __init__(self, text: str = GENESIS_OPENING, failing_chapters: Sequence[int] = ()) -> None:
        self.text = text
        self.failing_chapters = set(failing_chapters)
        self.calls: List[tuple] = []

    def fetch_chapter(self, book: str, chapter: int, version: str = "WEB") -> ChapterText:
        self.calls.append((book, chapter, version))
        if chapter in self.failing_chapters:
            raise TextSourceError(f"Could not fetch {book} {chapter}")
        metadata = {
            "book": book,
            "chapter": chapter,
            "version": version,
            "sentenceCount": self.text.count(".") or 1,
            "characterCount": len(self.text),
            "wordCount": len(self.text.split()),
        }
        return ChapterText(text=self.text, metadata=metadata)


class StubSynthesizer:
    def __init__(self, failing_chunks: Sequence[int] = (), fail_intro: bool = False) -> None:
        self.failing_chunks = set(failing_chunks)
        self.fail_intro = fail_intro
        self.chunks: List[str] = []
        self.introductions: List[tuple] = []

    def synthesize_introduction(self, book: str, chapter: int, credentials: FishCredentials, output_dir: Path) -> Path:
        if self.fail_intro:
            raise SynthesisError("Invalid Fish.Audio API key")
        self.introductions.append((book, chapter))
        path = Path(output_dir) / "intro.mp3"
        path.write_bytes(b"intro|")
        return path

    def synthesize_chunks(
        self,
        chunks: Sequence[str],
        credentials: FishCredentials,
        output_dir: Path,
        on_progress: Optional[Callable[[float, str], None]] = None,
    ) -> ChunkSynthesisResult:
        result = ChunkSynthesisResult()
        total = len(chunks)
        for index, chunk in enumerate(chunks):
            if on_progress:
                on_progress(round(index / total * 100), f"Generating audio for chunk {index + 1}/{total}...")
            if index + 1 in self.failing_chunks:
                result.warnings.append(f"Chunk {index + 1}: API error: 500")
                continue
            self.chunks.append(chunk)
            path = Path(output_dir) / f"chunk_{index + 1}.mp3"
            path.write_bytes(f"chunk{index + 1}|".encode("utf-8"))
            result.audio_paths.append(path)
        if on_progress:
            on_progress(100, "All chunks processed")
        if total and not result.audio_paths:
            raise SynthesisError(f"All chunks failed: {'; '.join(result.warnings)}")
        return result

    def validate_credentials(self, credentials: FishCredentials, scratch_dir: Path):
        if credentials.api_key == "good-key":
            return True, None
        return False, "Invalid Fish.Audio API key"

    def voice_model_info(self, credentials: FishCredentials) -> Dict:
        if credentials.voice_model_id == "missing-voice":
            raise SynthesisError("API returned status 404")
        return {"_id": credentials.voice_model_id, "title": "Narrator"}


class StubAssembler:
    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def process_chapter_audio(self, intro_path, chunk_paths, book, chapter, version, on_progress=None) -> ChapterAudio:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{book}_{chapter}_{version}_{output_timestamp_token()}.mp3"
        output_path = self.output_dir / filename
        parts = [Path(intro_path), *[Path(path) for path in chunk_paths]]
        output_path.write_bytes(b"".join(part.read_bytes() for part in parts))
        for percent in (0, 50, 120):
            if on_progress:
                on_progress(percent, f"Merging audio: {percent}%")
        for part in parts:
            part.unlink()
        metadata = AudioMetadata(duration=12, file_size=output_path.stat().st_size, format="mp3")
        return ChapterAudio(path=output_path, filename=filename, metadata=metadata)

    def list_generated_files(self) -> List[Dict]:
        return list_output_files(self.output_dir, ".mp3")

    def validate_ffmpeg(self) -> Dict:
        return {"available": True, "codecs": {"libmp3lame": True, "aac": True, "libx264": True}}


class StubComposer:
    def __init__(self, output_dir: Path, fail: bool = False) -> None:
        self.output_dir = Path(output_dir)
        self.fail = fail
        self.renders: List[tuple] = []

    def render(self, image_path, audio_path, book, chapter, version, on_progress=None, *, audio_duration=None):
        if self.fail:
            raise VideoRenderError("Video creation failed: encoder missing")
        self.renders.append((Path(image_path), Path(audio_path)))
        for percent in (10, 20, 90, 100):
            if on_progress:
                on_progress(percent, f"Creating video: {percent}%")
        filename = f"{book}_{chapter}_{version}_VIDEO_{output_timestamp_token()}.mp4"
        path = self.output_dir / filename
        path.write_bytes(Path(audio_path).read_bytes())
        return ChapterVideo(path=path, filename=filename, metadata={"type": "video", "duration": 12})

    def list_generated_files(self) -> List[Dict]:
        return list_output_files(self.output_dir, ".mp4")


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "generated"
    path.mkdir()
    return path


@pytest.fixture
def stub_collaborators(output_dir: Path) -> Dict[str, object]:
    return {
        "TEXT_SOURCE_CLIENT": StubTextSource(),
        "SYNTHESIZER": StubSynthesizer(),
        "AUDIO_ASSEMBLER": StubAssembler(output_dir),
        "VIDEO_COMPOSER": StubComposer(output_dir),
    }


@pytest.fixture
def app(tmp_path: Path, output_dir: Path, stub_collaborators):
    from audibible.webui.app import create_app

    app = create_app(
        {
            "TESTING": True,
            "TEMP_FOLDER": str(tmp_path / "temp"),
            "OUTPUT_FOLDER": str(output_dir),
            "CLOSE_DELAY": 0.05,
            **stub_collaborators,
        }
    )
    try:
        yield app
    finally:
        app.extensions["transcription_queue"].shutdown()
        app.extensions["progress_channel"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
