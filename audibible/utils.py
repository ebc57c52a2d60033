import json
import logging
import os
import platform
import subprocess
import sys
from functools import lru_cache
from typing import Any, Dict, Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def _load_environment() -> None:
    explicit_path = os.environ.get("AUDIBIBLE_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("AUDIBIBLE_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("AUDIBIBLE_DATA_DIR")
    if data_root:
        try:
            return ensure_directory(os.path.join(data_root, "settings"))
        except OSError:
            pass

    from platformdirs import user_config_dir

    config_dir = user_config_dir("audibible", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


@lru_cache(maxsize=1)
def get_user_cache_root():
    override = os.environ.get("AUDIBIBLE_TEMP_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_cache_dir

    return ensure_directory(user_cache_dir("audibible", appauthor=False))


def get_user_cache_path(folder=None):
    base = get_user_cache_root()
    if folder:
        return ensure_directory(os.path.join(base, folder))
    return base


@lru_cache(maxsize=1)
def get_user_output_root():
    override = os.environ.get("AUDIBIBLE_OUTPUT_DIR")
    if override:
        return ensure_directory(override)

    from platformdirs import user_data_dir

    return ensure_directory(os.path.join(user_data_dir("audibible", appauthor=False), "output"))


def get_user_output_path(folder=None):
    base = get_user_output_root()
    if folder:
        return ensure_directory(os.path.join(base, folder))
    return base


def load_config() -> Dict[str, Any]:
    try:
        with open(get_user_config_path(), "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return {}


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric value for %s: %r", name, raw)
        return default


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    formatted = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{formatted} {units[index]}"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


default_encoding = sys.getfilesystemencoding()


def create_process(cmd, stdin=None, text=True):
    """Start ``cmd`` with stdout and stderr merged into a single pipe.

    Callers own the returned process: they read its output and wait on it.
    """
    if isinstance(cmd, str):
        raise TypeError("create_process expects a list of arguments")

    kwargs: Dict[str, Any] = {
        "stdout": subprocess.PIPE,
        "stderr": subprocess.STDOUT,
    }
    if text:
        kwargs["text"] = True
        kwargs["encoding"] = default_encoding
        kwargs["errors"] = "replace"
        kwargs["bufsize"] = 1
    else:
        kwargs["bufsize"] = 0

    if stdin is not None:
        kwargs["stdin"] = stdin

    if platform.system() == "Windows":
        startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
        startupinfo.wShowWindow = subprocess.SW_HIDE  # type: ignore[attr-defined]
        kwargs.update(
            {
                "startupinfo": startupinfo,
                "creationflags": subprocess.CREATE_NO_WINDOW,  # type: ignore[attr-defined]
            }
        )

    logger.info("Executing: %s", " ".join(str(part) for part in cmd))
    return subprocess.Popen(cmd, **kwargs)


_ffmpeg_ready = False


def ensure_ffmpeg_on_path() -> None:
    """Make sure ``ffmpeg``/``ffprobe`` resolve, downloading static builds once."""
    global _ffmpeg_ready
    if _ffmpeg_ready:
        return

    import static_ffmpeg

    ffmpeg_cache_root = get_user_cache_path("ffmpeg")
    platform_cache = os.path.join(ffmpeg_cache_root, sys.platform)
    os.makedirs(platform_cache, exist_ok=True)
    static_ffmpeg.add_paths(weak=True, download_dir=platform_cache)
    _ffmpeg_ready = True


def resolve_ffmpeg_timeout(value: Optional[float] = None) -> float:
    if value is not None:
        return float(value)
    return env_float("AUDIBIBLE_FFMPEG_TIMEOUT", 1800.0)
