from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from audibible.errors import SynthesisError
from audibible.tts_fish import (
    FishAudioClient,
    FishCredentials,
    estimate_audio_seconds,
    estimate_processing_seconds,
    introduction_text,
)

CREDENTIALS = FishCredentials(api_key="secret-key", voice_model_id="voice-123")


def _client(handler, **kwargs) -> FishAudioClient:
    kwargs.setdefault("sleep", lambda _seconds: None)
    return FishAudioClient(base_url="https://fish.test/v1", transport=httpx.MockTransport(handler), **kwargs)


def test_credentials_resolve_from_environment(monkeypatch):
    monkeypatch.setenv("FISH_AUDIO_API_KEY", "env-key")
    monkeypatch.setenv("FISH_AUDIO_VOICE_MODEL_ID", "env-voice")

    assert FishCredentials.resolve() == FishCredentials("env-key", "env-voice")
    assert FishCredentials.resolve("given", None) == FishCredentials("given", "env-voice")
    assert "env-key" not in repr(FishCredentials.resolve())


def test_synthesize_posts_payload_and_writes_audio(tmp_path: Path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"ID3-audio")

    output = _client(handler).synthesize("Hello there.", CREDENTIALS, tmp_path / "out" / "hello.mp3")

    assert output.read_bytes() == b"ID3-audio"
    request = requests[0]
    assert request.url == "https://fish.test/v1/tts"
    assert request.headers["Authorization"] == "Bearer secret-key"
    body = json.loads(request.content)
    assert body == {
        "text": "Hello there.",
        "reference_id": "voice-123",
        "format": "mp3",
        "mp3_bitrate": 128,
        "normalize": True,
        "latency": "normal",
    }


@pytest.mark.parametrize(
    "status, message",
    [
        (401, "Invalid Fish.Audio API key"),
        (400, "Invalid request parameters"),
        (429, "Rate limit exceeded. Please try again later."),
        (500, "API error: 500 - boom"),
    ],
)
def test_synthesize_maps_status_codes(tmp_path: Path, status: int, message: str):
    client = _client(lambda request: httpx.Response(status, text="boom"))

    with pytest.raises(SynthesisError) as excinfo:
        client.synthesize("Hello.", CREDENTIALS, tmp_path / "x.mp3")

    assert str(excinfo.value) == message


def test_synthesize_requires_credentials(tmp_path: Path):
    client = _client(lambda request: httpx.Response(200, content=b"x"))

    with pytest.raises(SynthesisError, match="required"):
        client.synthesize("Hello.", FishCredentials("", "voice"), tmp_path / "x.mp3")


def test_synthesize_introduction_speaks_book_and_chapter(tmp_path: Path):
    spoken = []

    def handler(request: httpx.Request) -> httpx.Response:
        spoken.append(json.loads(request.content)["text"])
        return httpx.Response(200, content=b"intro")

    path = _client(handler).synthesize_introduction("Genesis", 1, CREDENTIALS, tmp_path)

    assert path == tmp_path / "intro.mp3"
    assert spoken == ["Genesis, Chapter 1"]
    assert introduction_text("Psalms", 23) == "Psalms, Chapter 23"


def test_synthesize_chunks_reports_progress_and_paces_requests(tmp_path: Path):
    pauses = []
    progress = []
    client = _client(lambda request: httpx.Response(200, content=b"chunk"), sleep=pauses.append)

    result = client.synthesize_chunks(
        ["One.", "Two.", "Three."],
        CREDENTIALS,
        tmp_path,
        on_progress=lambda percent, message: progress.append(percent),
    )

    assert [path.name for path in result.audio_paths] == ["chunk_1.mp3", "chunk_2.mp3", "chunk_3.mp3"]
    assert result.warnings == []
    assert progress == [0, 33, 67, 100]
    assert pauses == [1.0, 1.0]


def test_synthesize_chunks_keeps_going_after_a_failure(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["text"] == "Two.":
            return httpx.Response(429)
        return httpx.Response(200, content=b"chunk")

    result = _client(handler).synthesize_chunks(["One.", "Two.", "Three."], CREDENTIALS, tmp_path)

    assert [path.name for path in result.audio_paths] == ["chunk_1.mp3", "chunk_3.mp3"]
    assert result.warnings == ["Chunk 2: Rate limit exceeded. Please try again later."]


def test_synthesize_chunks_all_failed(tmp_path: Path):
    client = _client(lambda request: httpx.Response(401))

    with pytest.raises(SynthesisError, match="All chunks failed"):
        client.synthesize_chunks(["One.", "Two."], CREDENTIALS, tmp_path)


def test_validate_credentials(tmp_path: Path):
    good = _client(lambda request: httpx.Response(200, content=b"ok"))
    bad = _client(lambda request: httpx.Response(401))

    assert good.validate_credentials(CREDENTIALS, tmp_path) == (True, None)
    assert bad.validate_credentials(CREDENTIALS, tmp_path) == (False, "Invalid Fish.Audio API key")
    assert list(tmp_path.iterdir()) == []


def test_validate_credentials_uses_a_fresh_scratch_dir_per_call(monkeypatch, tmp_path: Path):
    client = _client(lambda request: httpx.Response(200, content=b"ok"))
    targets = []
    synthesize = client.synthesize

    def recording_synthesize(text, credentials, output_path):
        targets.append(Path(output_path))
        return synthesize(text, credentials, output_path)

    monkeypatch.setattr(client, "synthesize", recording_synthesize)

    client.validate_credentials(CREDENTIALS, tmp_path)
    client.validate_credentials(CREDENTIALS, tmp_path)

    assert targets[0].parent != targets[1].parent
    assert all(target.parent.parent == tmp_path for target in targets)
    assert not any(target.parent.exists() for target in targets)


def test_synthesize_maps_write_failures(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    client = _client(lambda request: httpx.Response(200, content=b"audio"))

    with pytest.raises(SynthesisError, match="Failed to save synthesized audio"):
        client.synthesize("Hello.", CREDENTIALS, blocker / "hello.mp3")


def test_voice_model_info(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models/voice-123"
        return httpx.Response(200, json={"title": "Narrator"})

    assert _client(handler).voice_model_info(CREDENTIALS) == {"title": "Narrator"}


def test_estimates():
    text = " ".join(["word"] * 155)

    assert estimate_audio_seconds(text) == 60
    assert estimate_processing_seconds("") == 0.0
    assert estimate_processing_seconds("One. Two.") == 5.0
