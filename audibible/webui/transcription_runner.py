from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from audibible.audio import AudioAssembler, ChapterAudio
from audibible.bible_books import get_chapter_count
from audibible.chunking import DEFAULT_MAX_SENTENCES, chunk_text
from audibible.errors import (
    CollaboratorError,
    PartialChapterError,
    ResourceMissingError,
    TranscriptionError,
    VideoRenderError,
)
from audibible.text_sources import TextSource
from audibible.tts_fish import (
    FishAudioClient,
    estimate_audio_seconds,
    estimate_processing_seconds,
    introduction_text,
)
from audibible.utils import format_duration
from audibible.video import ChapterVideo, VideoComposer

from .progress import ProgressChannel, ProgressEvent
from .service import Job, job_epoch_millis

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAGE_ANCHORS: Dict[str, int] = {
    "fetch_text": 5,
    "chunk_text": 10,
    "generate_intro": 15,
    "generate_chunks": 20,
    "merge_audio": 70,
    "create_video": 85,
    "cleanup": 95,
    "completed": 100,
}

STAGE_BANDS: Dict[str, Tuple[int, int]] = {
    "generate_chunks": (20, 70),
    "merge_audio": (70, 85),
    "create_video": (85, 95),
}

_FAILURE_MESSAGES: Dict[str, str] = {
    "fetch_text": "Failed to fetch Bible text",
    "chunk_text": "Failed to process chapter text",
    "generate_intro": "Chapter introduction generation failed",
    "generate_chunks": "Content audio generation failed",
    "merge_audio": "Audio processing failed",
    "validation": "Invalid book",
}

_LOG_LEVELS = {"progress": "debug", "warning": "warning", "error": "error", "completed": "success"}


def band_progress(step: str, sub_progress: Optional[float]) -> int:
    """Map a collaborator's 0-100 sub-progress into the stage's band."""
    low, high = STAGE_BANDS[step]
    clamped = min(100.0, max(0.0, float(sub_progress or 0)))
    value = low + clamped * (high - low) / 100
    return int(min(high, max(low, value)) + 0.5)


@dataclass(frozen=True)
class ChapterContext:
    chapter_index: int
    total_chapters: int

    def scale(self, progress: int) -> int:
        # (c-1)*100/T + p/T, truncated: chapter 2 of 4 at 50% is 37.
        return int(((self.chapter_index - 1) * 100 + progress) / self.total_chapters)

    def label(self, message: str) -> str:
        return f"Chapter {self.chapter_index}/{self.total_chapters}: {message}"


class ProgressReporter:
    """Publishes a job's events, keeping ``progress`` events non-decreasing."""

    def __init__(self, channel: ProgressChannel, job: Job) -> None:
        self._channel = channel
        self._job = job
        self._last_progress = 0
        self.context: Optional[ChapterContext] = None

    @property
    def last_progress(self) -> int:
        return self._last_progress

    def emit(
        self,
        event_type: str,
        step: str,
        progress: float,
        message: str,
        *,
        details: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> ProgressEvent:
        value = int(min(100, max(0, progress)))
        if self.context is not None:
            value = self.context.scale(value)
            message = self.context.label(message)
        if event_type == "progress":
            value = max(value, self._last_progress)
            self._last_progress = value
        event = ProgressEvent(
            type=event_type,
            progress=value,
            message=message,
            step=step,
            details=details,
            result=result,
            error=error,
        )
        self._job.add_log(f"[{step}] {message} ({value}%)", level=_LOG_LEVELS.get(event_type, "info"))
        self._channel.publish(self._job.id, event)
        return event

    def progress(self, step: str, progress: float, message: str, details: Optional[str] = None) -> ProgressEvent:
        return self.emit("progress", step, progress, message, details=details)

    def warning(self, step: str, progress: float, message: str, details: Optional[str] = None) -> ProgressEvent:
        return self.emit("warning", step, progress, message, details=details)

    def band_callback(self, step: str, details: str) -> Callable[[float, str], None]:
        def _report(sub_progress: float, message: str) -> None:
            self.progress(step, band_progress(step, sub_progress), message, details)

        return _report


@dataclass
class ChapterOutcome:
    result: Dict[str, Any]
    video_created: bool


class TranscriptionRunner:
    """Runs the fetch, chunk, synthesize, merge and render stages for a job."""

    def __init__(
        self,
        channel: ProgressChannel,
        text_source: TextSource,
        synthesizer: FishAudioClient,
        assembler: AudioAssembler,
        composer: Optional[VideoComposer] = None,
        *,
        temp_root: Path,
        persistent_images_dir: Optional[Path] = None,
        default_max_sentences: int = DEFAULT_MAX_SENTENCES,
        source_label: str = "BibleGateway",
    ) -> None:
        self._channel = channel
        self._text_source = text_source
        self._synthesizer = synthesizer
        self._assembler = assembler
        self._composer = composer
        self._temp_root = Path(temp_root)
        self._persistent_images_dir = Path(persistent_images_dir) if persistent_images_dir else None
        self._default_max_sentences = default_max_sentences
        self._source_label = source_label

    def __call__(self, job: Job) -> None:
        reporter = ProgressReporter(self._channel, job)
        started = time.time()
        job_dir = self._temp_root / job.id
        video_created = False
        try:
            if job.params.transcribe_full_book:
                job.result, video_created = self._run_full_book(job, reporter, job_dir, started)
            else:
                outcome = self._run_chapter(job, job.params.book, int(job.params.chapter or 0), reporter, job_dir, started)
                video_created = outcome.video_created
                job.result = outcome.result
                reporter.emit(
                    "completed",
                    "completed",
                    100,
                    outcome.result["message"],
                    details=f"Files ready for download: {', '.join(a['filename'] for a in outcome.result['artifacts'])}",
                    result=outcome.result,
                )
        except TranscriptionError as exc:
            reporter.context = None
            reporter.emit(
                "error",
                exc.step,
                STAGE_ANCHORS.get(exc.step, 0),
                _FAILURE_MESSAGES.get(exc.step, "Transcription failed"),
                error=str(exc),
            )
            self._channel.close_later(job.id, 0)
            raise
        except Exception as exc:
            reporter.context = None
            reporter.emit(
                "error",
                "error",
                0,
                "Transcription failed",
                details="An unexpected error occurred during processing",
                error=str(exc),
            )
            self._channel.close_later(job.id, 0)
            raise
        finally:
            shutil.rmtree(job_dir, ignore_errors=True)

        if video_created:
            self._discard_background_image(job.params.background_image_path)
        self._channel.close_later(job.id)

    # Stages -------------------------------------------------------------
    def _stage(self, step: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except CollaboratorError as exc:
            raise TranscriptionError(step, str(exc), cause=exc) from exc

    def _run_chapter(
        self,
        job: Job,
        book: str,
        chapter: int,
        reporter: ProgressReporter,
        work_dir: Path,
        started: float,
    ) -> ChapterOutcome:
        params = job.params
        credentials = params.credentials
        version = params.version
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            reporter.progress(
                "fetch_text",
                STAGE_ANCHORS["fetch_text"],
                f"Fetching {book} {chapter} ({version}) from {self._source_label}...",
                "Downloading chapter text and cleaning verse numbers",
            )
            chapter_text = self._stage(
                "fetch_text", lambda: self._text_source.fetch_chapter(book, chapter, version)
            )
            text = chapter_text.text

            sentence_count = chapter_text.metadata.get("sentenceCount", 0)
            reporter.progress(
                "chunk_text",
                STAGE_ANCHORS["chunk_text"],
                "Processing chapter text...",
                f"Processing {sentence_count} sentences, {len(text)} characters",
            )
            max_sentences = params.max_sentences or self._default_max_sentences
            chunks = chunk_text(text, max_sentences)
            if not chunks:
                raise TranscriptionError("chunk_text", f"No speakable text found for {book} {chapter}")
            job.add_log(f"Split {book} {chapter} into {len(chunks)} chunks (max {max_sentences} sentences)")
            text_metadata = dict(chapter_text.metadata)
            text_metadata["estimatedAudioSeconds"] = estimate_audio_seconds(text)
            text_metadata["estimatedProcessingSeconds"] = estimate_processing_seconds(
                text, max_sentences=max_sentences
            )
            job.add_log(
                f"Estimated {format_duration(text_metadata['estimatedAudioSeconds'])} of audio, "
                f"about {format_duration(text_metadata['estimatedProcessingSeconds'])} to synthesize"
            )

            reporter.progress(
                "generate_intro",
                STAGE_ANCHORS["generate_intro"],
                "Creating chapter introduction...",
                f'Generating "{introduction_text(book, chapter)}" with Fish.Audio',
            )
            intro_path = self._stage(
                "generate_intro",
                lambda: self._synthesizer.synthesize_introduction(book, chapter, credentials, work_dir),
            )

            reporter.progress(
                "generate_chunks",
                STAGE_ANCHORS["generate_chunks"],
                f"Generating audio for {len(chunks)} text chunks...",
                "Creating speech audio with Fish.Audio TTS",
            )
            synthesis = self._stage(
                "generate_chunks",
                lambda: self._synthesizer.synthesize_chunks(
                    chunks,
                    credentials,
                    work_dir,
                    on_progress=reporter.band_callback("generate_chunks", "Processing chunk audio with Fish.Audio"),
                ),
            )
            for warning in synthesis.warnings:
                reporter.warning(
                    "generate_chunks",
                    reporter.last_progress,
                    "Some text chunks could not be synthesized",
                    warning,
                )

            reporter.progress(
                "merge_audio",
                STAGE_ANCHORS["merge_audio"],
                "Merging audio files...",
                f"Combining introduction + {len(synthesis.audio_paths)} parts into single MP3",
            )
            audio = self._stage(
                "merge_audio",
                lambda: self._assembler.process_chapter_audio(
                    intro_path,
                    synthesis.audio_paths,
                    book,
                    chapter,
                    version,
                    on_progress=reporter.band_callback("merge_audio", "Merging audio with FFmpeg"),
                ),
            )

            video, video_error = self._render_video(job, book, chapter, audio, reporter)
            if video is not None:
                try:
                    audio.path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Failed to remove %s after video render: %s", audio.path, exc)

            reporter.progress(
                "cleanup",
                STAGE_ANCHORS["cleanup"],
                "Cleaning up temporary files...",
                "Removing temporary audio chunks and processing files",
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        result = self._build_result(
            job,
            book=book,
            chapter=chapter,
            chapter_metadata=text_metadata,
            chunk_count=len(chunks),
            audio=audio,
            video=video,
            video_error=video_error,
            started=started,
        )
        return ChapterOutcome(result=result, video_created=video is not None)

    def _render_video(
        self,
        job: Job,
        book: str,
        chapter: int,
        audio: ChapterAudio,
        reporter: ProgressReporter,
    ) -> Tuple[Optional[ChapterVideo], Optional[str]]:
        params = job.params
        if not params.create_video or not params.background_image_path:
            return None, None
        anchor = STAGE_ANCHORS["create_video"]
        if self._composer is None:
            reporter.warning("create_video", anchor, "Video processing not available, skipping video creation")
            return None, None

        reporter.progress(
            "create_video",
            anchor,
            "Creating video with background image...",
            "Combining audio with static image to create MP4 video",
        )
        try:
            image_path = Path(params.background_image_path)
            if not image_path.is_file():
                raise ResourceMissingError(f"Background image not found: {image_path}")
            video = self._composer.render(
                image_path,
                audio.path,
                book,
                chapter,
                params.version,
                on_progress=reporter.band_callback("create_video", "Creating HD video with FFmpeg"),
                audio_duration=audio.metadata.duration or None,
            )
        except ResourceMissingError as exc:
            logger.warning("%s; skipping video creation", exc)
            reporter.warning(
                "create_video",
                anchor,
                "Background image not found, skipping video creation",
                "Video will not be created, but audio is complete",
            )
            return None, None
        except VideoRenderError as exc:
            reporter.warning("create_video", anchor, "Video creation failed, audio is still available", str(exc))
            return None, str(exc)
        return video, None

    def _run_full_book(
        self,
        job: Job,
        reporter: ProgressReporter,
        job_dir: Path,
        started: float,
    ) -> Tuple[Dict[str, Any], bool]:
        book = job.params.book
        total = get_chapter_count(book)
        if not total:
            raise TranscriptionError("validation", f"Book {book} not found")

        completed: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []
        video_created = False
        for chapter in range(1, total + 1):
            base = int((chapter - 1) * 100 / total)
            reporter.context = None
            reporter.progress(
                "book_progress",
                base,
                f"Processing {book} chapter {chapter} of {total}",
                "Full book transcription in progress",
            )
            reporter.context = ChapterContext(chapter_index=chapter, total_chapters=total)
            try:
                outcome = self._run_chapter(job, book, chapter, reporter, job_dir / f"chapter_{chapter}", started)
            except Exception as exc:
                step = exc.step if isinstance(exc, TranscriptionError) else "error"
                if not isinstance(exc, TranscriptionError):
                    logger.exception("Unexpected failure in %s chapter %s", book, chapter)
                failure = PartialChapterError(chapter, str(exc))
                reporter.context = None
                reporter.warning(
                    "chapter_error",
                    base,
                    f"Warning: Failed to process chapter {chapter}",
                    f"{step}: {failure}",
                )
                failures.append({"chapter": chapter, "step": step, "error": str(failure)})
                continue
            video_created = video_created or outcome.video_created
            completed.append(
                {
                    "chapter": chapter,
                    "artifacts": outcome.result["artifacts"],
                    "downloadUrl": outcome.result["downloadUrl"],
                }
            )
            reporter.progress("completed", 100, "Chapter completed")

        reporter.context = None
        if not completed:
            job.add_log(f"No chapters of {book} could be processed", level="warning")

        result = {
            "success": True,
            "message": f"Full book completed: {book} ({total} chapters)",
            "book": book,
            "totalChapters": total,
            "chapters": completed,
            "failedChapters": failures,
            "artifacts": [artifact for entry in completed for artifact in entry["artifacts"]],
            "processingTime": self._processing_time(job, started),
        }
        reporter.emit(
            "completed",
            "book_complete",
            100,
            result["message"],
            details=f"{len(completed)} of {total} chapters processed successfully",
            result=result,
        )
        return result, video_created

    # Helpers ------------------------------------------------------------
    def _build_result(
        self,
        job: Job,
        *,
        book: str,
        chapter: int,
        chapter_metadata: Dict[str, Any],
        chunk_count: int,
        audio: ChapterAudio,
        video: Optional[ChapterVideo],
        video_error: Optional[str],
        started: float,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"book": book, "chapter": chapter, "version": job.params.version}
        metadata.update(audio.metadata.as_dict())
        metadata.update(
            {
                "textMetadata": dict(chapter_metadata),
                "chunkCount": chunk_count,
                "hasIntroduction": True,
                "totalParts": chunk_count + 1,
                "processingTime": self._processing_time(job, started),
            }
        )

        if video is not None:
            deliverable = video.filename
            artifacts = [{"type": "video", "filename": video.filename, "downloadUrl": f"/api/download/{video.filename}"}]
        else:
            deliverable = audio.filename
            artifacts = [{"type": "audio", "filename": audio.filename, "downloadUrl": f"/api/download/{audio.filename}"}]

        result: Dict[str, Any] = {
            "success": True,
            "message": (
                "Transcription and video creation completed successfully"
                if video is not None
                else "Transcription completed successfully"
            ),
            "filename": deliverable,
            "downloadUrl": f"/api/download/{deliverable}",
            "metadata": metadata,
            "artifacts": artifacts,
        }
        if video is not None:
            result["video"] = {
                "filename": video.filename,
                "downloadUrl": f"/api/download/{video.filename}",
                "metadata": video.metadata,
            }
            result["audioDeletedForVideo"] = True
        elif video_error:
            result["videoError"] = video_error
        return result

    def _processing_time(self, job: Job, started: float) -> int:
        submitted = job_epoch_millis(job.id)
        now_ms = int(time.time() * 1000)
        if submitted is not None and submitted <= now_ms:
            return now_ms - submitted
        return int((time.time() - started) * 1000)

    def _discard_background_image(self, image_path: Optional[str]) -> None:
        if not image_path:
            return
        path = Path(image_path)
        if self._is_persistent_image(path):
            logger.info("Keeping persistent background image %s", path)
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to clean up background image %s: %s", path, exc)

    def _is_persistent_image(self, path: Path) -> bool:
        if self._persistent_images_dir is not None:
            try:
                path.resolve().relative_to(self._persistent_images_dir.resolve())
                return True
            except ValueError:
                pass
        return "persistent_images" in path.parts
