"""Render a short script into an animated text-to-video clip."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Mapping

from domain.script_text import INVALID_CONFIG_CODE, ScriptValidationError
from domain.style_presets import find_style_preset
from service.capture_pipeline import (
    CaptureEncodePipeline,
    GenerationRequest,
    ProgressCallback,
    TickSource,
)
from service.generation_controller import GenerationController
from service.video_encoder import (
    DEFAULT_VIDEO_BITRATE,
    FfmpegCapabilityProbe,
    VideoArtifact,
    build_ffmpeg_encoder_factory,
)

LOGGER = logging.getLogger("text_to_video_studio")

FFMPEG_PATH_ENV = "TEXT_TO_VIDEO_FFMPEG_PATH"
FONTS_DIR_ENV = "TEXT_TO_VIDEO_FONTS_DIR"
VIDEO_BITRATE_ENV = "TEXT_TO_VIDEO_VIDEO_BITRATE"
LOG_LEVEL_ENV = "TEXT_TO_VIDEO_LOG_LEVEL"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class StudioSettings:
    """Runtime settings for the studio."""

    ffmpeg_path: str | None = None
    fonts_dir: str | None = None
    video_bitrate: int = DEFAULT_VIDEO_BITRATE
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.video_bitrate <= 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "video bitrate must be positive"
            )
        if self.log_level not in LOG_LEVELS:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, f"unsupported log level: {self.log_level}"
            )
        if self.fonts_dir is not None and not self.fonts_dir.strip():
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "fonts directory must be non-empty when set"
            )


def configure_logging(env: Mapping[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.INFO
    if level_name == "DEBUG":
        level = logging.DEBUG
    elif level_name == "WARNING":
        level = logging.WARNING
    elif level_name == "ERROR":
        level = logging.ERROR
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def parse_positive_int(raw_value: str, field_name: str) -> int:
    """Parse a positive integer from a string."""
    try:
        parsed = int(raw_value)
    except ValueError as exc:
        raise ScriptValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be an integer"
        ) from exc
    if parsed <= 0:
        raise ScriptValidationError(INVALID_CONFIG_CODE, f"{field_name} must be positive")
    return parsed


def read_env_int(
    env: Mapping[str, str], key: str, field_name: str, fallback: int
) -> int:
    """Read an integer from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    return parse_positive_int(raw_value, field_name)


def read_env_str(env: Mapping[str, str], key: str) -> str | None:
    """Read an optional string from the environment; blank means unset."""
    raw_value = env.get(key, "").strip()
    return raw_value or None


def load_settings(env: Mapping[str, str] | None = None) -> StudioSettings:
    """Load studio settings from the environment."""
    if env is None:
        env = os.environ
    return StudioSettings(
        ffmpeg_path=read_env_str(env, FFMPEG_PATH_ENV),
        fonts_dir=read_env_str(env, FONTS_DIR_ENV),
        video_bitrate=read_env_int(
            env, VIDEO_BITRATE_ENV, "video-bitrate", DEFAULT_VIDEO_BITRATE
        ),
        log_level=env.get(LOG_LEVEL_ENV, "INFO").strip().upper() or "INFO",
    )


def build_pipeline(
    settings: StudioSettings, tick_source: TickSource | None = None
) -> CaptureEncodePipeline:
    """Wire the ffmpeg-backed capture pipeline."""
    return CaptureEncodePipeline(
        capability_provider=FfmpegCapabilityProbe(settings.ffmpeg_path),
        encoder_factory=build_ffmpeg_encoder_factory(settings.ffmpeg_path),
        tick_source=tick_source,
        bitrate=settings.video_bitrate,
        fonts_dir=settings.fonts_dir,
    )


def build_controller(settings: StudioSettings) -> GenerationController:
    return GenerationController(build_pipeline(settings))


def query_capability(settings: StudioSettings | None = None) -> str | None:
    """Return the best supported video mime type, or None."""
    return build_pipeline(settings or load_settings()).query_capability()


def generate_video(
    script: str,
    duration_seconds: int = 8,
    style_id: str | None = None,
    settings: StudioSettings | None = None,
    on_progress: ProgressCallback | None = None,
) -> VideoArtifact:
    """Render a script to a clip, blocking until the artifact is ready.

    Errors propagate as ScriptValidationError or VideoGenerationError.
    """
    resolved = settings or load_settings()
    request = GenerationRequest(
        script=script,
        duration_seconds=duration_seconds,
        style=find_style_preset(style_id),
    )
    pipeline = build_pipeline(resolved)
    artifact = asyncio.run(pipeline.generate(request, on_progress=on_progress))
    LOGGER.info(
        "text_to_video.generate.completed: %s (%s bytes)",
        artifact.suggested_filename,
        artifact.size,
    )
    return artifact
