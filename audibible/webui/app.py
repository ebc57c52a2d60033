from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Any, Optional

from flask import Flask

from audibible.audio import AudioAssembler
from audibible.text_sources import build_text_source
from audibible.tts_fish import DEFAULT_SYNTHESIS_DELAY, FishAudioClient
from audibible.utils import env_bool, env_int, get_user_cache_path, get_user_output_path, load_config
from audibible.video import VideoComposer

from .progress import DEFAULT_CLOSE_DELAY, ProgressChannel
from .service import DEFAULT_MAX_COMPLETED_JOBS, build_service
from .transcription_runner import TranscriptionRunner

PERSISTENT_IMAGES_DIRNAME = "persistent_images"


class _SuppressSuccessfulAccessFilter(logging.Filter):
    """Filter out successful (HTTP 2xx) werkzeug access logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small utility
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        # Werkzeug access logs include the status code near the end, e.g.
        # "GET /api/progress/x HTTP/1.1" 200 -
        return " 200 " not in message and " 201 " not in message and " 204 " not in message


_access_log_filter_attached = False


def _default_dirs() -> tuple[Path, Path]:
    temp = Path(get_user_cache_path("temp"))
    outputs = Path(get_user_output_path())
    temp.mkdir(parents=True, exist_ok=True)
    outputs.mkdir(parents=True, exist_ok=True)
    return temp, outputs


def create_app(config: Optional[dict[str, Any]] = None) -> Flask:
    temp_dir, outputs_dir = _default_dirs()
    saved = load_config()

    app = Flask(__name__)
    base_config = {
        "TEMP_FOLDER": str(temp_dir),
        "OUTPUT_FOLDER": str(outputs_dir),
        "MAX_COMPLETED_JOBS": env_int(
            "AUDIBIBLE_MAX_COMPLETED_JOBS",
            int(saved.get("max_completed_jobs") or DEFAULT_MAX_COMPLETED_JOBS),
        ),
        "TEXT_SOURCE": os.environ.get("AUDIBIBLE_TEXT_SOURCE") or saved.get("text_source") or "gateway",
        "LOCAL_BIBLE_API_URL": os.environ.get("LOCAL_BIBLE_API_URL"),
        "FISH_AUDIO_BASE_URL": os.environ.get("FISH_AUDIO_BASE_URL"),
        "SYNTHESIS_DELAY": DEFAULT_SYNTHESIS_DELAY,
        "CLOSE_DELAY": DEFAULT_CLOSE_DELAY,
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,  # 10 MB image uploads
    }
    if config:
        base_config.update(config)
    app.config.update(base_config)

    temp_root = Path(app.config["TEMP_FOLDER"])
    output_root = Path(app.config["OUTPUT_FOLDER"])
    persistent_images = temp_root / PERSISTENT_IMAGES_DIRNAME
    for directory in (temp_root, output_root, persistent_images):
        directory.mkdir(parents=True, exist_ok=True)
    app.config["PERSISTENT_IMAGES_FOLDER"] = str(persistent_images)

    text_source_name = str(app.config["TEXT_SOURCE"]).strip().lower()
    text_source = app.config.get("TEXT_SOURCE_CLIENT") or build_text_source(
        text_source_name,
        local_base_url=app.config.get("LOCAL_BIBLE_API_URL"),
    )
    synthesizer = app.config.get("SYNTHESIZER") or FishAudioClient(
        base_url=app.config.get("FISH_AUDIO_BASE_URL"),
        delay=float(app.config["SYNTHESIS_DELAY"]),
    )
    assembler = app.config.get("AUDIO_ASSEMBLER") or AudioAssembler(output_root)
    composer = app.config.get("VIDEO_COMPOSER") or VideoComposer(output_root, temp_root)

    channel = ProgressChannel(close_delay=float(app.config["CLOSE_DELAY"]))
    runner = TranscriptionRunner(
        channel,
        text_source,
        synthesizer,
        assembler,
        composer,
        temp_root=temp_root,
        persistent_images_dir=persistent_images,
        source_label="local Bible API" if text_source_name == "local" else "BibleGateway",
    )
    service = build_service(runner, max_completed_jobs=int(app.config["MAX_COMPLETED_JOBS"]))

    app.extensions["transcription_queue"] = service
    app.extensions["progress_channel"] = channel
    app.extensions["transcription_runner"] = runner
    app.extensions["text_source"] = text_source
    app.extensions["synthesizer"] = synthesizer
    app.extensions["audio_assembler"] = assembler
    app.extensions["video_composer"] = composer

    from audibible.webui.routes import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")

    atexit.register(service.shutdown)
    atexit.register(channel.shutdown)

    global _access_log_filter_attached
    if not _access_log_filter_attached:
        logging.getLogger("werkzeug").addFilter(_SuppressSuccessfulAccessFilter())
        _access_log_filter_attached = True

    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    app = create_app()
    host = os.environ.get("AUDIBIBLE_HOST", "0.0.0.0")
    port = env_int("AUDIBIBLE_PORT", 3003)
    debug = env_bool("AUDIBIBLE_DEBUG", False)
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":  # pragma: no cover
    main()
