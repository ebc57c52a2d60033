import logging
import re
import secrets
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from flask import Blueprint, Response, jsonify, request, send_file
from flask.typing import ResponseReturnValue
from werkzeug.utils import secure_filename

from audibible.bible_books import BIBLE_BOOKS, SUPPORTED_VERSIONS, get_book_names, get_chapter_count, validate_chapter
from audibible.chunking import default_max_chunk_chars
from audibible.errors import ImageValidationError, SynthesisError, ValidationError
from audibible.tts_fish import FishCredentials
from audibible.utils import format_file_size
from audibible.video import validate_image
from audibible.webui.routes.utils.form import build_params_from_payload, parse_chapter
from audibible.webui.routes.utils.service import (
    get_assembler,
    get_channel,
    get_composer,
    get_queue,
    get_synthesizer,
    output_folder,
    persistent_images_folder,
    temp_folder,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)

_FRIENDLY_NAME_RE = re.compile(r"^(.+?)_(\d+)_([A-Z0-9]+)(_VIDEO)?_(.+)\.(mp3|mp4)$")
_MEDIA_TYPES = {".mp3": "audio/mpeg", ".mp4": "video/mp4"}


def _error(message: str, status: int, **extra) -> ResponseReturnValue:
    payload = {"success": False, "error": message}
    payload.update(extra)
    return jsonify(payload), status


def _output_file(filename: str) -> Optional[Path]:
    """Resolve ``filename`` inside the output folder, rejecting traversal attempts."""
    if not filename or ".." in filename or "/" in filename or "\\" in filename:
        return None
    root = output_folder().resolve()
    candidate = (root / filename).resolve()
    if candidate.parent != root:
        return None
    return candidate


def friendly_download_name(filename: str) -> str:
    match = _FRIENDLY_NAME_RE.match(filename)
    if not match:
        return filename
    book, chapter, _version, video, _stamp, ext = match.groups()
    return f"{book}_Chapter_{chapter}{'_Video' if video else ''}.{ext}"


# --- Service ---

@api_bp.get("/health")
def api_health() -> ResponseReturnValue:
    return jsonify(
        {
            "status": "ok",
            "message": "Audibible API is running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "textSource": "available",
                "fishAudio": "available",
                "audioProcessing": "available",
            },
        }
    )


@api_bp.get("/config")
def api_config() -> ResponseReturnValue:
    ffmpeg_status = get_assembler().validate_ffmpeg()
    env_credentials = FishCredentials.resolve()
    return jsonify(
        {
            "fishAudioConfigured": env_credentials.is_complete,
            "voiceModelId": env_credentials.voice_model_id if env_credentials.is_complete else None,
            "apiKeyConfigured": bool(env_credentials.api_key),
            "voiceModelConfigured": bool(env_credentials.voice_model_id),
            "maxChunkSize": default_max_chunk_chars(),
            "ffmpegAvailable": ffmpeg_status.get("available", False),
            "ffmpegError": ffmpeg_status.get("error"),
            "codecs": ffmpeg_status.get("codecs", {}),
            "videoProcessingAvailable": bool(ffmpeg_status.get("available")) and get_composer() is not None,
        }
    )


@api_bp.post("/validate-credentials")
def api_validate_credentials() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    api_key = str(payload.get("fishApiKey") or "").strip()
    voice_model_id = str(payload.get("voiceModelId") or "").strip()
    if not api_key or not voice_model_id:
        return jsonify({"error": "Both fishApiKey and voiceModelId are required"}), 400

    synthesizer = get_synthesizer()
    credentials = FishCredentials(api_key, voice_model_id)
    valid, error = synthesizer.validate_credentials(credentials, temp_folder())
    if not valid:
        return jsonify({"valid": False, "error": error}), 400

    voice_model = None
    try:
        voice_model = synthesizer.voice_model_info(credentials)
    except SynthesisError as exc:
        logger.warning("Voice model lookup failed for %s: %s", voice_model_id, exc)
    return jsonify({"valid": True, "message": "Credentials are valid", "voiceModel": voice_model})


# --- Bible metadata ---

@api_bp.get("/bible/books")
def api_bible_books() -> ResponseReturnValue:
    return jsonify({"success": True, "books": dict(BIBLE_BOOKS), "bookNames": get_book_names()})


@api_bp.get("/bible/versions")
def api_bible_versions() -> ResponseReturnValue:
    return jsonify({"success": True, "versions": SUPPORTED_VERSIONS})


@api_bp.get("/bible/validate/<book>/<chapter>")
def api_bible_validate(book: str, chapter: str) -> ResponseReturnValue:
    chapter_num = parse_chapter(chapter)
    validation = validate_chapter(book, chapter_num)
    return jsonify(
        {
            "success": True,
            "valid": validation.valid,
            "book": book,
            "chapter": chapter_num,
            "maxChapters": get_chapter_count(book),
            "message": validation.message,
        }
    )


# --- Transcription ---

@api_bp.post("/transcribe")
def api_transcribe() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    try:
        params = build_params_from_payload(payload)
    except ValidationError as exc:
        return _error(str(exc), 400)

    receipt = get_queue().submit(params)
    label = "Full Book" if params.transcribe_full_book else params.chapter
    logger.info("Queued transcription %s %s (%s) as %s", params.book, label, params.version, receipt.job_id)

    position = receipt.position
    return jsonify(
        {
            "success": True,
            "jobId": receipt.job_id,
            "message": "Transcription started" if position == 1 else f"Job queued (position {position})",
            "progressUrl": f"/api/progress/{receipt.job_id}",
            "queue": {
                "position": position,
                "length": receipt.queue_length,
                "estimated_wait": f"~{(position - 1) * 3} minutes" if position > 1 else "0 minutes",
            },
        }
    )


@api_bp.get("/progress/<job_id>")
def api_progress(job_id: str) -> ResponseReturnValue:
    channel = get_channel()
    subscription = channel.subscribe(job_id)

    def generate():
        try:
            yield from subscription.stream()
        finally:
            channel.unsubscribe(job_id, subscription)

    response = Response(generate(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


# --- Queue ---

@api_bp.get("/queue")
def api_queue_status() -> ResponseReturnValue:
    status = get_queue().status()
    return jsonify({"success": True, **status})


@api_bp.delete("/queue/<job_id>")
def api_cancel_job(job_id: str) -> ResponseReturnValue:
    result = get_queue().cancel(job_id)
    if not result.success:
        return _error(result.error or "Job not found in queue", 404)
    return jsonify({"success": True, "message": f"Job {job_id} cancelled", "job": result.job})


@api_bp.post("/queue/clear-completed")
def api_clear_completed() -> ResponseReturnValue:
    get_queue().clear_history()
    return jsonify({"success": True, "message": "Completed jobs history cleared"})


# --- Background images ---

@api_bp.post("/upload-image")
def api_upload_image() -> ResponseReturnValue:
    file = request.files.get("backgroundImage")
    if not file or not file.filename:
        return jsonify({"error": "No image file uploaded"}), 400
    if file.mimetype and not file.mimetype.startswith("image/"):
        return jsonify({"error": "Only image files are allowed!"}), 400

    upload_dir = temp_folder() / "images"
    upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(secure_filename(file.filename)).suffix.lower()
    stored_name = f"bg-image-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{suffix}"
    stored_path = upload_dir / stored_name
    file.save(stored_path)

    try:
        info = validate_image(stored_path)
    except ImageValidationError as exc:
        stored_path.unlink(missing_ok=True)
        return jsonify({"error": str(exc)}), 400

    persistent_dir = persistent_images_folder()
    persistent_dir.mkdir(parents=True, exist_ok=True)
    persistent_path = persistent_dir / f"bg_{int(time.time() * 1000)}_{stored_name}"
    shutil.copyfile(stored_path, persistent_path)

    image_info = info.as_dict()
    image_info["size"] = stored_path.stat().st_size
    return jsonify(
        {
            "success": True,
            "message": "Image uploaded successfully",
            "imageId": stored_name,
            "imagePath": str(stored_path),
            "persistentImagePath": str(persistent_path),
            "imageInfo": image_info,
        }
    )


@api_bp.delete("/cleanup-image")
def api_cleanup_image() -> ResponseReturnValue:
    payload = request.get_json(force=True, silent=True) or {}
    image_path = str(payload.get("imagePath") or "").strip()
    if not image_path:
        return jsonify({"success": True, "message": "Image already removed or not found"})

    root = persistent_images_folder().resolve()
    target = Path(image_path).resolve()
    if target.parent != root:
        return _error("Only persistent background images can be removed", 400)
    if not target.is_file():
        return jsonify({"success": True, "message": "Image already removed or not found"})
    target.unlink()
    logger.info("Cleaned up persistent image: %s", target)
    return jsonify({"success": True, "message": "Image cleaned up"})


# --- Generated files ---

@api_bp.get("/download/<filename>")
def api_download(filename: str) -> ResponseReturnValue:
    path = _output_file(filename)
    if path is None:
        return jsonify({"error": "Invalid filename"}), 400
    if not path.is_file():
        return jsonify({"error": "File not found"}), 404

    download_name = friendly_download_name(filename)
    logger.info("Download: %s -> %s", filename, download_name)
    return send_file(
        path,
        mimetype=_MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream"),
        as_attachment=True,
        download_name=download_name,
    )


@api_bp.get("/files")
def api_files() -> ResponseReturnValue:
    audio_files = [dict(entry, type="audio") for entry in get_assembler().list_generated_files()]
    composer = get_composer()
    video_files = [dict(entry, type="video") for entry in composer.list_generated_files()] if composer else []
    files = sorted(audio_files + video_files, key=lambda entry: entry["created"], reverse=True)
    return jsonify(
        {
            "files": files,
            "summary": {"total": len(files), "audio": len(audio_files), "video": len(video_files)},
        }
    )


@api_bp.delete("/files/<filename>")
def api_delete_file(filename: str) -> ResponseReturnValue:
    path = _output_file(filename)
    if path is None:
        return jsonify({"error": "Invalid filename"}), 400
    if not path.is_file():
        return jsonify({"error": "File not found"}), 404
    path.unlink()
    return jsonify({"success": True, "message": "File deleted successfully"})


@api_bp.get("/stats")
def api_stats() -> ResponseReturnValue:
    files = get_assembler().list_generated_files()
    total_size = sum(entry["sizeBytes"] for entry in files)
    return jsonify(
        {
            "totalFiles": len(files),
            "totalSize": format_file_size(total_size),
            "oldestFile": files[-1]["created"] if files else None,
            "newestFile": files[0]["created"] if files else None,
        }
    )
