from pathlib import Path

from flask import current_app

from audibible.audio import AudioAssembler
from audibible.tts_fish import FishAudioClient
from audibible.video import VideoComposer
from audibible.webui.progress import ProgressChannel
from audibible.webui.service import TranscriptionQueue


def get_queue() -> TranscriptionQueue:
    return current_app.extensions["transcription_queue"]


def get_channel() -> ProgressChannel:
    return current_app.extensions["progress_channel"]


def get_synthesizer() -> FishAudioClient:
    return current_app.extensions["synthesizer"]


def get_assembler() -> AudioAssembler:
    return current_app.extensions["audio_assembler"]


def get_composer() -> VideoComposer:
    return current_app.extensions["video_composer"]


def output_folder() -> Path:
    return Path(current_app.config["OUTPUT_FOLDER"])


def temp_folder() -> Path:
    return Path(current_app.config["TEMP_FOLDER"])


def persistent_images_folder() -> Path:
    return Path(current_app.config["PERSISTENT_IMAGES_FOLDER"])
