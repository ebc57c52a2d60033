from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from audibible.audio import list_output_files, output_timestamp_token, probe_media, run_ffmpeg, safe_name_component
from audibible.errors import ImageValidationError, VideoRenderError
from audibible.utils import resolve_ffmpeg_timeout

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

VIDEO_SIZE = (1920, 1080)
SUPPORTED_IMAGE_FORMATS = ("jpeg", "jpg", "png", "webp", "tiff", "gif")
_TITLE_FONT_SIZE = 96
_TITLE_CENTER = (960, 320)
_FONT_CANDIDATES = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf", "LiberationSans-Bold.ttf")


@dataclass(frozen=True)
class ImageInfo:
    format: str
    width: int
    height: int

    def as_dict(self) -> Dict[str, Any]:
        return {"format": self.format, "width": self.width, "height": self.height}


@dataclass
class ChapterVideo:
    path: Path
    filename: str
    metadata: Dict[str, Any]


def validate_image(path: Path) -> ImageInfo:
    try:
        with Image.open(path) as image:
            fmt = (image.format or "").lower()
            width, height = image.size
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageValidationError(f"Invalid image file: {exc}") from exc

    if fmt not in SUPPORTED_IMAGE_FORMATS:
        raise ImageValidationError(
            f"Unsupported image format: {fmt or 'unknown'}. "
            f"Supported formats: {', '.join(SUPPORTED_IMAGE_FORMATS)}"
        )
    return ImageInfo(format=fmt, width=width, height=height)


def _load_title_font(size: int) -> ImageFont.ImageFont:
    for candidate in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def prepare_background(image_path: Path, output_path: Path, title: Optional[str] = None) -> Path:
    """Fit the image inside a 1920x1080 black frame and draw the title on it."""
    try:
        with Image.open(image_path) as source:
            converted = source.convert("RGB")
            fitted = ImageOps.contain(converted, VIDEO_SIZE)
    except (UnidentifiedImageError, OSError) as exc:
        raise VideoRenderError(f"Image processing failed: {exc}") from exc

    canvas = Image.new("RGB", VIDEO_SIZE, (0, 0, 0))
    offset = ((VIDEO_SIZE[0] - fitted.width) // 2, (VIDEO_SIZE[1] - fitted.height) // 2)
    canvas.paste(fitted, offset)

    if title:
        try:
            draw = ImageDraw.Draw(canvas)
            font = _load_title_font(_TITLE_FONT_SIZE)
            x, y = _TITLE_CENTER
            draw.text((x + 2, y + 2), title, font=font, fill=(0, 0, 0), anchor="ms")
            draw.text((x, y), title, font=font, fill=(255, 255, 255), anchor="ms")
        except (OSError, ValueError) as exc:
            # The untitled frame is still usable.
            logger.warning("Text overlay failed: %s", exc)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    canvas.save(output_path, format="JPEG", quality=90, progressive=True)
    return output_path


class VideoComposer:
    """Renders a still-image MP4 for a chapter recording."""

    def __init__(self, output_dir: Path, work_dir: Path, *, ffmpeg_timeout: Optional[float] = None) -> None:
        self.output_dir = Path(output_dir)
        self.work_dir = Path(work_dir)
        self._timeout = resolve_ffmpeg_timeout(ffmpeg_timeout)

    def build_command(self, image_path: Path, audio_path: Path, output_path: Path) -> List[str]:
        return [
            "ffmpeg",
            "-y",
            "-loop",
            "1",
            "-framerate",
            "1",
            "-i",
            str(image_path),
            "-i",
            str(audio_path),
            "-c:v",
            "libx264",
            "-c:a",
            "aac",
            "-pix_fmt",
            "yuv420p",
            "-shortest",
            "-movflags",
            "+faststart",
            str(output_path),
        ]

    def render(
        self,
        image_path: Path,
        audio_path: Path,
        book: str,
        chapter: int,
        version: str,
        on_progress: Optional[ProgressCallback] = None,
        *,
        audio_duration: Optional[float] = None,
    ) -> ChapterVideo:
        filename = (
            f"{safe_name_component(book)}_{chapter}_{safe_name_component(version)}"
            f"_VIDEO_{output_timestamp_token()}.mp4"
        )
        output_path = self.output_dir / filename
        self.output_dir.mkdir(parents=True, exist_ok=True)
        frame_path = self.work_dir / f"frame_{Path(filename).stem}.jpg"

        logger.info("Creating video: %s %s (%s)", book, chapter, version)
        prepare_background(Path(image_path), frame_path, title=f"{book} {chapter}")
        if on_progress:
            on_progress(10, "Creating video from image and audio...")

        def _forward(percent: float, _message: str) -> None:
            if on_progress:
                scaled = round(20 + percent * 0.7)
                on_progress(scaled, f"Creating video: {scaled}%")

        try:
            if on_progress:
                on_progress(20, "Starting video generation...")
            run_ffmpeg(
                self.build_command(frame_path, Path(audio_path), output_path),
                timeout=self._timeout,
                error_cls=VideoRenderError,
                total_seconds=audio_duration,
                on_progress=_forward,
                label="Creating video",
            )
        except VideoRenderError:
            output_path.unlink(missing_ok=True)
            raise
        finally:
            frame_path.unlink(missing_ok=True)

        if on_progress:
            on_progress(95, "Video created, getting metadata...")
        metadata = self._metadata(output_path, book, chapter, version)
        if on_progress:
            on_progress(100, "Video creation completed")
        return ChapterVideo(path=output_path, filename=filename, metadata=metadata)

    def list_generated_files(self) -> List[Dict[str, Any]]:
        return list_output_files(self.output_dir, ".mp4")

    def _metadata(self, path: Path, book: str, chapter: int, version: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "book": book,
            "chapter": chapter,
            "version": version,
            "fileSize": path.stat().st_size if path.exists() else 0,
            "type": "video",
        }
        try:
            info = probe_media(path)
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            logger.warning("ffprobe failed for %s: %s", path, exc)
            return metadata

        fmt = info.get("format") or {}
        try:
            metadata["duration"] = round(float(fmt.get("duration") or 0))
        except (TypeError, ValueError):
            metadata["duration"] = 0
        for stream in info.get("streams") or []:
            if stream.get("codec_type") == "video":
                metadata["videoCodec"] = stream.get("codec_name")
                if stream.get("width") and stream.get("height"):
                    metadata["resolution"] = f"{stream['width']}x{stream['height']}"
            elif stream.get("codec_type") == "audio":
                metadata["audioCodec"] = stream.get("codec_name")
        return metadata
