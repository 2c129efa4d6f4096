"""Real-time capture and encode pipeline for text_to_video_studio."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import closing
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, Tuple

from PIL import Image

from domain.script_text import (
    INVALID_DURATION_CODE,
    ScriptValidationError,
    segment_script,
    validate_duration_seconds,
)
from domain.style_presets import StylePreset
from service.frame_renderer import FrameRenderer, compute_font_size, load_text_font
from service.video_encoder import (
    DEFAULT_VIDEO_BITRATE,
    ENCODER_FAILURE_CODE,
    ENCODING_PREFERENCES,
    SESSION_CONFLICT_CODE,
    SURFACE_UNAVAILABLE_CODE,
    UNSUPPORTED_CAPABILITY_CODE,
    CapabilityProvider,
    EncoderFactory,
    EncoderSettings,
    EncodingProfile,
    FrameEncoder,
    VideoArtifact,
    VideoGenerationError,
    negotiate_encoding_profile,
)

LOGGER = logging.getLogger("text_to_video.capture_pipeline")

TARGET_FPS = 30
FRAME_WIDTH = 1280
FRAME_HEIGHT = 720

ProgressCallback = Callable[[int], None]
PhaseCallback = Callable[[], None]
SurfaceFactory = Callable[[int, int], FrameRenderer]


@dataclass(frozen=True)
class GenerationRequest:
    """Validated input for one generation run."""

    script: str
    duration_seconds: int
    style: StylePreset

    def __post_init__(self) -> None:
        validate_duration_seconds(self.duration_seconds)


@dataclass(frozen=True)
class PreparedGeneration:
    """Everything a session needs, resolved before recording starts."""

    request: GenerationRequest
    lines: Tuple[str, ...]
    profile: EncodingProfile
    settings: EncoderSettings
    renderer: FrameRenderer


@dataclass(frozen=True)
class DrivenFrame:
    """Result of one driver tick."""

    elapsed_seconds: float
    normalized: float
    progress_percent: int
    image: Image.Image

    @property
    def finished(self) -> bool:
        return self.normalized >= 1.0


class TickSource(Protocol):
    """Cooperative scheduling primitive that paces the drive loop."""

    async def next_tick(self) -> float:
        """Wait for the next tick and return a clock reading in seconds."""
        ...


class EventLoopTickSource:
    """Tick as fast as the event loop allows, yielding once per tick."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self.clock = clock

    async def next_tick(self) -> float:
        await asyncio.sleep(0)
        return self.clock()


def normalize_elapsed(elapsed_seconds: float, duration_seconds: float) -> float:
    """Map elapsed wall-clock time onto [0, 1]."""
    return min(1.0, max(0.0, elapsed_seconds / duration_seconds))


def progress_percent(normalized: float) -> int:
    """Round normalized progress to an integer percentage, halves rounding up."""
    return int(math.floor(normalized * 100 + 0.5))


def compute_total_frames(duration_seconds: float, fps: int) -> int:
    """Compute total frames for a clip duration."""
    total_frames = int(round(duration_seconds * fps))
    if total_frames <= 0:
        raise ScriptValidationError(
            INVALID_DURATION_CODE, "duration and fps produce zero frames"
        )
    return total_frames


class FrameDriver:
    """Turn elapsed time into rendered frames, independent of any scheduler."""

    def __init__(
        self,
        renderer: FrameRenderer,
        lines: Sequence[str],
        style: StylePreset,
        duration_seconds: float,
    ) -> None:
        self.renderer = renderer
        self.lines = tuple(lines)
        self.style = style
        self.duration_seconds = float(duration_seconds)

    def tick(self, elapsed_seconds: float) -> DrivenFrame:
        normalized = normalize_elapsed(elapsed_seconds, self.duration_seconds)
        return DrivenFrame(
            elapsed_seconds=elapsed_seconds,
            normalized=normalized,
            progress_percent=progress_percent(normalized),
            image=self.renderer.render(normalized, self.lines, self.style),
        )


class CaptureStream:
    """Sample the rendering surface into an encoder at a fixed frame rate.

    A frame captured at ``elapsed`` seconds is repeated until the stream
    holds ``floor(elapsed * fps) + 1`` frames, so the encoded clip keeps
    wall-clock timing when rendering runs slower than the frame rate.
    The last of ``total_frames`` slots is reserved for the final frame.

    Catch-up writes run synchronously on the calling thread; a stop request
    issued meanwhile takes effect on the next tick.
    """

    def __init__(self, encoder: FrameEncoder, fps: int, total_frames: int) -> None:
        self.encoder = encoder
        self.fps = fps
        self.total_frames = total_frames
        self.frames_captured = 0
        self.active = True

    def capture(self, image: Image.Image, elapsed_seconds: float, final: bool = False) -> int:
        """Feed the current surface and return how many frames were written."""
        if not self.active:
            raise VideoGenerationError(ENCODER_FAILURE_CODE, "capture stream is stopped")
        if final:
            target = self.total_frames
        else:
            target = min(
                self.total_frames - 1,
                int(math.floor(max(0.0, elapsed_seconds) * self.fps)) + 1,
            )
        written = 0
        while self.frames_captured < target:
            try:
                self.encoder.write_frame(image)
            except VideoGenerationError:
                raise
            except Exception as exc:
                raise VideoGenerationError(
                    ENCODER_FAILURE_CODE, f"encoder rejected frame: {exc}"
                ) from exc
            self.frames_captured += 1
            written += 1
        return written

    def stop(self) -> None:
        """Stop sampling; further captures are rejected."""
        if self.active:
            LOGGER.debug(
                "text_to_video.capture.stopped: %s frames", self.frames_captured
            )
        self.active = False


class GenerationSession:
    """State of the single active generation, owned by the pipeline."""

    def __init__(self, prepared: PreparedGeneration) -> None:
        self.prepared = prepared
        self.started_at: float | None = None
        self.highest_progress = 0
        self.last_normalized: float | None = None

    def accepts(self, normalized: float) -> bool:
        """Frames are submitted in strictly increasing normalized order."""
        return self.last_normalized is None or normalized > self.last_normalized

    def record_submission(self, normalized: float) -> None:
        self.last_normalized = normalized

    def record_progress(self, percent: int) -> int:
        """Keep the running maximum of reported progress."""
        if percent > self.highest_progress:
            self.highest_progress = percent
        return self.highest_progress


def acquire_default_surface(width: int, height: int, fonts_dir: str | None) -> FrameRenderer:
    """Create the rendering surface with its text font."""
    return FrameRenderer(width, height, load_text_font(compute_font_size(height), fonts_dir))


class CaptureEncodePipeline:
    """Drive the frame renderer against a deadline and encode its output."""

    def __init__(
        self,
        capability_provider: CapabilityProvider,
        encoder_factory: EncoderFactory,
        tick_source: TickSource | None = None,
        surface_factory: SurfaceFactory | None = None,
        preferences: Sequence[EncodingProfile] = ENCODING_PREFERENCES,
        bitrate: int = DEFAULT_VIDEO_BITRATE,
        fonts_dir: str | None = None,
    ) -> None:
        self.capability_provider = capability_provider
        self.encoder_factory = encoder_factory
        self.tick_source = tick_source or EventLoopTickSource()
        self.preferences = tuple(preferences)
        self.bitrate = bitrate
        self.fonts_dir = fonts_dir
        self._surface_factory = surface_factory
        self._surface: FrameRenderer | None = None
        self._active_session: GenerationSession | None = None

    @property
    def active_session(self) -> GenerationSession | None:
        return self._active_session

    def query_capability(self) -> str | None:
        """Return the negotiated mime type, or None when nothing is supported."""
        profile = negotiate_encoding_profile(self.capability_provider, self.preferences)
        return profile.mime_type if profile else None

    def prepare(self, request: GenerationRequest) -> PreparedGeneration:
        """Resolve capabilities, surface and lines for a request."""
        if self._active_session is not None:
            raise VideoGenerationError(
                SESSION_CONFLICT_CODE, "a generation session is already active"
            )
        profile = negotiate_encoding_profile(self.capability_provider, self.preferences)
        if profile is None:
            raise VideoGenerationError(
                UNSUPPORTED_CAPABILITY_CODE,
                "no supported video container/codec is available",
            )
        lines = segment_script(request.script)
        renderer = self._acquire_surface()
        try:
            renderer.prepare_lines(lines)
        except (OSError, ValueError) as exc:
            raise VideoGenerationError(
                SURFACE_UNAVAILABLE_CODE, f"failed to render text onto surface: {exc}"
            ) from exc
        return PreparedGeneration(
            request=request,
            lines=lines,
            profile=profile,
            settings=EncoderSettings(
                width=FRAME_WIDTH, height=FRAME_HEIGHT, fps=TARGET_FPS, bitrate=self.bitrate
            ),
            renderer=renderer,
        )

    async def run(
        self,
        prepared: PreparedGeneration,
        on_progress: ProgressCallback | None = None,
        on_processing: PhaseCallback | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> VideoArtifact | None:
        """Record, encode and return the artifact for a prepared generation.

        Returns None when a stop was requested before encoding started.
        Encoder and capture resources are released on every exit path.
        """
        if self._active_session is not None:
            raise VideoGenerationError(
                SESSION_CONFLICT_CODE, "a generation session is already active"
            )
        session = GenerationSession(prepared)
        self._active_session = session
        try:
            if stop_event is not None and stop_event.is_set():
                LOGGER.info("text_to_video.session.discarded: stopped before encoding")
                return None
            return await self._record_and_encode(
                session, on_progress, on_processing, stop_event
            )
        finally:
            self._active_session = None

    async def generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> VideoArtifact:
        """Prepare and run a generation to completion."""
        artifact = await self.run(self.prepare(request), on_progress=on_progress)
        if artifact is None:
            raise VideoGenerationError(ENCODER_FAILURE_CODE, "generation produced no artifact")
        return artifact

    async def _record_and_encode(
        self,
        session: GenerationSession,
        on_progress: ProgressCallback | None,
        on_processing: PhaseCallback | None,
        stop_event: asyncio.Event | None,
    ) -> VideoArtifact:
        prepared = session.prepared
        settings = prepared.settings
        driver = FrameDriver(
            prepared.renderer,
            prepared.lines,
            prepared.request.style,
            prepared.request.duration_seconds,
        )
        encoder = self.encoder_factory(prepared.profile, settings)
        with closing(encoder):
            capture = CaptureStream(
                encoder,
                settings.fps,
                compute_total_frames(prepared.request.duration_seconds, settings.fps),
            )
            LOGGER.info(
                "text_to_video.session.recording: %s lines, %ss, %s",
                len(prepared.lines),
                prepared.request.duration_seconds,
                prepared.profile.mime_type,
            )
            try:
                completed = await self._drive(
                    session, driver, capture, on_progress, stop_event
                )
            finally:
                capture.stop()

            LOGGER.info(
                "text_to_video.session.processing: %s frames (%s)",
                capture.frames_captured,
                "completed" if completed else "stopped early",
            )
            if on_processing is not None:
                on_processing()
            loop = asyncio.get_running_loop()
            try:
                data = await loop.run_in_executor(None, encoder.finalize)
            except VideoGenerationError:
                raise
            except Exception as exc:
                raise VideoGenerationError(
                    ENCODER_FAILURE_CODE, f"encoder flush failed: {exc}"
                ) from exc

        artifact = VideoArtifact(
            data, prepared.profile.mime_type, prepared.profile.file_extension
        )
        LOGGER.info(
            "text_to_video.session.completed: %s bytes %s", artifact.size, artifact.mime_type
        )
        return artifact

    async def _drive(
        self,
        session: GenerationSession,
        driver: FrameDriver,
        capture: CaptureStream,
        on_progress: ProgressCallback | None,
        stop_event: asyncio.Event | None,
    ) -> bool:
        """Run the tick loop; return True when the deadline was reached."""
        while True:
            now = await self.tick_source.next_tick()
            if session.started_at is None:
                session.started_at = now
            if stop_event is not None and stop_event.is_set():
                LOGGER.info(
                    "text_to_video.session.stop_requested: at %s%%",
                    session.highest_progress,
                )
                return False

            frame = driver.tick(now - session.started_at)
            if session.accepts(frame.normalized):
                capture.capture(frame.image, frame.elapsed_seconds, final=frame.finished)
                session.record_submission(frame.normalized)
            progress = session.record_progress(frame.progress_percent)
            if on_progress is not None:
                on_progress(progress)
            if frame.finished:
                return True

    def _acquire_surface(self) -> FrameRenderer:
        if self._surface is not None:
            return self._surface
        try:
            if self._surface_factory is not None:
                surface = self._surface_factory(FRAME_WIDTH, FRAME_HEIGHT)
            else:
                surface = acquire_default_surface(FRAME_WIDTH, FRAME_HEIGHT, self.fonts_dir)
        except (ScriptValidationError, OSError, ValueError) as exc:
            code = getattr(exc, "code", SURFACE_UNAVAILABLE_CODE)
            LOGGER.error("%s: %s", code, str(exc).strip())
            raise VideoGenerationError(
                SURFACE_UNAVAILABLE_CODE, f"rendering surface unavailable: {exc}"
            ) from exc
        self._surface = surface
        return surface
