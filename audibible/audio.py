from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Type

from audibible.errors import AudioMergeError, CollaboratorError
from audibible.utils import (
    create_process,
    ensure_ffmpeg_on_path,
    format_duration,
    format_file_size,
    resolve_ffmpeg_timeout,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

MP3_BITRATE = "128k"
MP3_SAMPLE_RATE = 22050


def output_timestamp_token(now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}Z"


def safe_name_component(value: Any) -> str:
    text = str(value).strip()
    for forbidden in ("/", "\\", "\x00"):
        text = text.replace(forbidden, "-")
    return text.lstrip(".") or "untitled"


@dataclass
class AudioMetadata:
    duration: int
    file_size: int
    bitrate: str = MP3_BITRATE
    format: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "durationFormatted": format_duration(self.duration),
            "fileSize": self.file_size,
            "fileSizeFormatted": format_file_size(self.file_size),
            "bitrate": self.bitrate,
            "format": self.format,
        }


@dataclass
class ChapterAudio:
    path: Path
    filename: str
    metadata: AudioMetadata


def _parse_progress_seconds(key: str, value: str) -> Optional[float]:
    if key in {"out_time_us", "out_time_ms"}:
        # ffmpeg reports both keys in microseconds.
        try:
            return int(value) / 1_000_000
        except ValueError:
            return None
    if key == "out_time":
        try:
            hours, minutes, seconds = value.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return None
    return None


def run_ffmpeg(
    command: Sequence[str],
    *,
    timeout: float,
    error_cls: Type[CollaboratorError],
    total_seconds: Optional[float] = None,
    on_progress: Optional[ProgressCallback] = None,
    label: str = "Processing",
) -> None:
    """Run ffmpeg with ``-progress pipe:1`` and forward percentages.

    The reported percentage is relative to ``total_seconds`` and can exceed
    100; callers clamp it.
    """
    ensure_ffmpeg_on_path()
    full_command = list(command[:1]) + ["-hide_banner", "-nostats", "-loglevel", "error", "-progress", "pipe:1"]
    full_command += list(command[1:])

    try:
        process = create_process(full_command, text=True)
    except FileNotFoundError as exc:
        raise error_cls("FFmpeg not found. Please install FFmpeg to use audio processing features.") from exc

    timed_out = threading.Event()

    def _kill() -> None:
        timed_out.set()
        process.kill()

    timer = threading.Timer(timeout, _kill)
    timer.daemon = True
    timer.start()
    diagnostics: Deque[str] = deque(maxlen=20)
    try:
        for raw_line in process.stdout or ():
            line = raw_line.strip()
            if not line:
                continue
            key, sep, value = line.partition("=")
            if not sep or " " in key:
                diagnostics.append(line)
                continue
            seconds = _parse_progress_seconds(key, value)
            if seconds is not None and total_seconds and on_progress:
                percent = round(seconds / total_seconds * 100)
                on_progress(percent, f"{label}: {percent}%")
        return_code = process.wait()
    finally:
        timer.cancel()
        if process.stdout:
            process.stdout.close()

    if timed_out.is_set():
        raise error_cls(f"ffmpeg timed out after {timeout:.0f} seconds")
    if return_code != 0:
        detail = " | ".join(diagnostics) or f"exit code {return_code}"
        raise error_cls(f"ffmpeg failed: {detail}")


def probe_media(path: Path, *, timeout: float = 30.0) -> Dict[str, Any]:
    ensure_ffmpeg_on_path()
    command = [
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration,bit_rate,format_name:stream=codec_type,codec_name,width,height",
        "-of",
        "json",
        str(path),
    ]
    completed = subprocess.run(command, check=True, capture_output=True, text=True, timeout=timeout)
    return json.loads(completed.stdout or "{}")


class AudioAssembler:
    """Combines the introduction and chunk MP3s into one chapter file."""

    def __init__(self, output_dir: Path, *, ffmpeg_timeout: Optional[float] = None) -> None:
        self.output_dir = Path(output_dir)
        self._timeout = resolve_ffmpeg_timeout(ffmpeg_timeout)

    # Public API ---------------------------------------------------------
    def merge(
        self,
        audio_paths: Sequence[Path],
        output_path: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        paths = [Path(path) for path in audio_paths]
        if not paths:
            raise AudioMergeError("No audio files provided for merging")

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if len(paths) == 1:
            return self._copy(paths[0], output_path, on_progress)

        missing = [str(path) for path in paths if not path.exists()]
        if missing:
            logger.warning("Skipping missing audio parts: %s", ", ".join(missing))
            paths = [path for path in paths if path.exists()]
            if not paths:
                raise AudioMergeError("None of the audio parts exist on disk")
            if len(paths) == 1:
                return self._copy(paths[0], output_path, on_progress)

        total_seconds = sum(self._duration_or_zero(path) for path in paths) or None

        if on_progress:
            on_progress(0, "Starting audio merge...")
        try:
            self._merge_with_filter(paths, output_path, total_seconds, on_progress)
        except AudioMergeError as primary:
            logger.warning("Concat filter failed (%s); retrying with concat demuxer", primary)
            try:
                self._merge_with_demuxer(paths, output_path, total_seconds, on_progress)
            except AudioMergeError as fallback:
                output_path.unlink(missing_ok=True)
                raise AudioMergeError(
                    f"Audio merge failed: {primary}. Fallback also failed: {fallback}"
                ) from fallback

        if on_progress:
            on_progress(100, "Audio merge completed")
        return output_path

    def process_chapter_audio(
        self,
        intro_path: Optional[Path],
        chunk_paths: Sequence[Path],
        book: str,
        chapter: int,
        version: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChapterAudio:
        filename = (
            f"{safe_name_component(book)}_{chapter}_{safe_name_component(version)}_{output_timestamp_token()}.mp3"
        )
        output_path = self.output_dir / filename
        parts: List[Path] = []
        if intro_path is not None:
            parts.append(Path(intro_path))
        parts.extend(Path(path) for path in chunk_paths)

        try:
            self.merge(parts, output_path, on_progress)
        finally:
            self.cleanup_parts(parts)

        metadata = self.probe(output_path)
        logger.info("Chapter audio written to %s", output_path)
        return ChapterAudio(path=output_path, filename=filename, metadata=metadata)

    def probe(self, path: Path) -> AudioMetadata:
        path = Path(path)
        size = path.stat().st_size if path.exists() else 0
        try:
            info = probe_media(path)
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            logger.warning("ffprobe failed for %s: %s", path, exc)
            return AudioMetadata(duration=0, file_size=size)

        fmt = info.get("format") or {}
        try:
            duration = round(float(fmt.get("duration") or 0))
        except (TypeError, ValueError):
            duration = 0
        try:
            bitrate = f"{round(int(fmt.get('bit_rate') or 128000) / 1000)}k"
        except (TypeError, ValueError):
            bitrate = MP3_BITRATE
        return AudioMetadata(duration=duration, file_size=size, bitrate=bitrate, format=fmt.get("format_name"))

    def cleanup_parts(self, paths: Sequence[Path]) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)

    def list_generated_files(self) -> List[Dict[str, Any]]:
        return list_output_files(self.output_dir, ".mp3")

    def validate_ffmpeg(self) -> Dict[str, Any]:
        try:
            ensure_ffmpeg_on_path()
            completed = subprocess.run(
                ["ffmpeg", "-hide_banner", "-encoders"],
                check=True,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("FFmpeg validation failed: %s", exc)
            return {
                "available": False,
                "error": "FFmpeg not found. Please install FFmpeg to use audio processing features.",
            }
        encoders = completed.stdout or ""
        return {
            "available": True,
            "codecs": {
                "libmp3lame": " libmp3lame " in encoders,
                "aac": " aac " in encoders,
                "libx264": " libx264 " in encoders,
            },
        }

    # Internal -----------------------------------------------------------
    def _duration_or_zero(self, path: Path) -> float:
        try:
            info = probe_media(path)
            return float((info.get("format") or {}).get("duration") or 0)
        except (OSError, subprocess.SubprocessError, ValueError, TypeError):
            return 0.0

    def _copy(self, source: Path, output_path: Path, on_progress: Optional[ProgressCallback]) -> Path:
        if on_progress:
            on_progress(0, "Copying audio file...")
        try:
            shutil.copyfile(source, output_path)
        except OSError as exc:
            output_path.unlink(missing_ok=True)
            raise AudioMergeError(f"Failed to copy audio file: {exc}") from exc
        if on_progress:
            on_progress(100, "Audio file copied")
        return output_path

    def _encoding_args(self) -> List[str]:
        return [
            "-c:a",
            "libmp3lame",
            "-b:a",
            MP3_BITRATE,
            "-ac",
            "1",
            "-ar",
            str(MP3_SAMPLE_RATE),
            "-f",
            "mp3",
        ]

    def build_filter_command(self, paths: Sequence[Path], output_path: Path) -> List[str]:
        command = ["ffmpeg", "-y"]
        for path in paths:
            command += ["-i", str(path)]
        command += ["-filter_complex", f"concat=n={len(paths)}:v=0:a=1[out]", "-map", "[out]"]
        command += self._encoding_args()
        command.append(str(output_path))
        return command

    def build_demuxer_command(self, list_file: Path, output_path: Path) -> List[str]:
        command = ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", str(list_file)]
        command += self._encoding_args()
        command.append(str(output_path))
        return command

    def _merge_with_filter(
        self,
        paths: Sequence[Path],
        output_path: Path,
        total_seconds: Optional[float],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        run_ffmpeg(
            self.build_filter_command(paths, output_path),
            timeout=self._timeout,
            error_cls=AudioMergeError,
            total_seconds=total_seconds,
            on_progress=on_progress,
            label="Merging audio",
        )

    def _merge_with_demuxer(
        self,
        paths: Sequence[Path],
        output_path: Path,
        total_seconds: Optional[float],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        list_file = output_path.with_name(f".{output_path.stem}_concat_list.txt")
        lines = []
        for path in paths:
            escaped = str(Path(path).resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        if on_progress:
            on_progress(0, "Starting simple audio merge...")
        try:
            run_ffmpeg(
                self.build_demuxer_command(list_file, output_path),
                timeout=self._timeout,
                error_cls=AudioMergeError,
                total_seconds=total_seconds,
                on_progress=on_progress,
                label="Simple merging",
            )
        finally:
            list_file.unlink(missing_ok=True)


def list_output_files(directory: Path, suffix: str) -> List[Dict[str, Any]]:
    directory = Path(directory)
    if not directory.exists():
        return []
    entries: List[Dict[str, Any]] = []
    for path in directory.iterdir():
        if not path.is_file() or path.suffix.lower() != suffix or path.name.startswith("."):
            continue
        stat = path.stat()
        entries.append(
            {
                "filename": path.name,
                "size": format_file_size(stat.st_size),
                "sizeBytes": stat.st_size,
                "created": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                "downloadUrl": f"/api/download/{path.name}",
            }
        )
    entries.sort(key=lambda entry: entry["created"], reverse=True)
    return entries
