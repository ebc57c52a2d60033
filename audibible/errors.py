from __future__ import annotations

from typing import Optional


class AudibibleError(RuntimeError):
    """Base class for errors raised by audibible."""


class ValidationError(AudibibleError):
    """Raised when a request is rejected before any job is queued."""


class ImageValidationError(ValidationError):
    """Raised when an uploaded background image cannot be used."""


class CollaboratorError(AudibibleError):
    """Raised when an external collaborator (network, TTS, ffmpeg) fails."""


class TextSourceError(CollaboratorError):
    """Raised when chapter text cannot be fetched or parsed."""


class SynthesisError(CollaboratorError):
    """Raised when the speech provider rejects or fails a request."""


class AudioMergeError(CollaboratorError):
    """Raised when audio parts cannot be combined."""


class VideoRenderError(CollaboratorError):
    """Raised when the still-image video cannot be rendered."""


class ResourceMissingError(AudibibleError):
    """Raised when a file referenced by a job disappeared before it was used."""


class ChannelDeliveryError(AudibibleError):
    """Raised when a progress event cannot be handed to its subscriber."""


class TranscriptionError(AudibibleError):
    """Raised by the pipeline after it has reported a failed stage."""

    def __init__(self, step: str, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.step = step
        self.cause = cause


class PartialChapterError(AudibibleError):
    """Raised when one chapter of a full-book run fails."""

    def __init__(self, chapter: int, message: str) -> None:
        super().__init__(message)
        self.chapter = chapter
