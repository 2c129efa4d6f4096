"""Capability negotiation and ffmpeg encoding for text_to_video_studio."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, Tuple

from PIL import Image

LOGGER = logging.getLogger("text_to_video.video_encoder")

SURFACE_UNAVAILABLE_CODE = "text_to_video.surface.unavailable"
UNSUPPORTED_CAPABILITY_CODE = "text_to_video.capability.unsupported"
ENCODER_FAILURE_CODE = "text_to_video.encoder.failed"
SESSION_CONFLICT_CODE = "text_to_video.session.conflict"
FFMPEG_NOT_FOUND_CODE = "text_to_video.ffmpeg.not_found"
FFMPEG_PROBE_CODE = "text_to_video.ffmpeg.probe_error"
ARTIFACT_RELEASED_CODE = "text_to_video.artifact.released"

DEFAULT_VIDEO_BITRATE = 6_000_000
OUTPUT_PIXEL_FORMAT = "yuv420p"
VPX_DEADLINE = "realtime"
VP9_CPU_USED = "8"
VP8_CPU_USED = "8"
H264_PRESET = "veryfast"
H264_MOVFLAGS = "frag_keyframe+empty_moov"
DEFAULT_FILENAME_STEM = "text-to-video"
READ_CHUNK_BYTES = 64 * 1024


class VideoGenerationError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class EncoderSettings:
    """Frame geometry and rate control shared by every encoder."""

    width: int
    height: int
    fps: int
    bitrate: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError("width and height must be positive")
        if self.width % 2 or self.height % 2:
            raise ValueError("width and height must be even")
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        if self.bitrate <= 0:
            raise ValueError("bitrate must be positive")


@dataclass(frozen=True)
class EncodingProfile:
    """Container/codec pair and the ffmpeg settings that produce it."""

    mime_type: str
    container: str
    codec: str
    file_extension: str
    args_builder: Callable[[EncoderSettings], Tuple[str, ...]]


def build_vp9_args(settings: EncoderSettings) -> Tuple[str, ...]:
    """Build VP9 codec arguments for real-time encoding."""
    return (
        "-deadline",
        VPX_DEADLINE,
        "-cpu-used",
        VP9_CPU_USED,
        "-row-mt",
        "1",
    )


def build_vp8_args(settings: EncoderSettings) -> Tuple[str, ...]:
    """Build VP8 codec arguments for real-time encoding."""
    return ("-deadline", VPX_DEADLINE, "-cpu-used", VP8_CPU_USED)


def build_h264_args(settings: EncoderSettings) -> Tuple[str, ...]:
    """Build H.264 codec arguments for a streamable MP4."""
    return ("-preset", H264_PRESET, "-movflags", H264_MOVFLAGS)


ENCODING_PREFERENCES: Tuple[EncodingProfile, ...] = (
    EncodingProfile(
        mime_type="video/webm;codecs=vp9",
        container="webm",
        codec="libvpx-vp9",
        file_extension="webm",
        args_builder=build_vp9_args,
    ),
    EncodingProfile(
        mime_type="video/webm;codecs=vp8",
        container="webm",
        codec="libvpx",
        file_extension="webm",
        args_builder=build_vp8_args,
    ),
    EncodingProfile(
        mime_type="video/mp4;codecs=avc1",
        container="mp4",
        codec="libx264",
        file_extension="mp4",
        args_builder=build_h264_args,
    ),
)


class CapabilityProvider(Protocol):
    """Answers whether an encoding profile can be produced."""

    def supports(self, profile: EncodingProfile) -> bool:
        ...


class FrameEncoder(Protocol):
    """Sink for raw frames that yields the encoded container bytes."""

    def write_frame(self, frame: Image.Image) -> None:
        ...

    def finalize(self) -> bytes:
        ...

    def close(self) -> None:
        ...


EncoderFactory = Callable[[EncodingProfile, EncoderSettings], FrameEncoder]


def resolve_ffmpeg_path(ffmpeg_path: str | None) -> str | None:
    """Resolve the ffmpeg executable, returning None when it is missing."""
    return shutil.which(ffmpeg_path or "ffmpeg")


def parse_ffmpeg_listing(listing: str) -> frozenset[str]:
    """Extract component names from ``ffmpeg -encoders``/``-muxers`` output."""
    names: set[str] = set()
    in_table = False
    for line in listing.splitlines():
        stripped = line.strip()
        if not in_table:
            in_table = stripped.startswith("--")
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            names.update(parts[1].split(","))
    return frozenset(names)


class FfmpegCapabilityProbe:
    """Capability provider backed by the local ffmpeg build."""

    def __init__(self, ffmpeg_path: str | None = None) -> None:
        self.ffmpeg_path = ffmpeg_path
        self._encoders: frozenset[str] | None = None
        self._muxers: frozenset[str] | None = None
        self._lock = threading.Lock()

    def supports(self, profile: EncodingProfile) -> bool:
        """Return True when ffmpeg has both the encoder and the muxer."""
        encoders, muxers = self._probe()
        return profile.codec in encoders and profile.container in muxers

    def _probe(self) -> Tuple[frozenset[str], frozenset[str]]:
        with self._lock:
            if self._encoders is None or self._muxers is None:
                self._encoders = self._list_components("-encoders")
                self._muxers = self._list_components("-muxers")
            return self._encoders, self._muxers

    def _list_components(self, flag: str) -> frozenset[str]:
        executable = resolve_ffmpeg_path(self.ffmpeg_path)
        if executable is None:
            LOGGER.warning("%s: ffmpeg not on PATH", FFMPEG_NOT_FOUND_CODE)
            return frozenset()
        try:
            result = subprocess.run(
                [executable, "-hide_banner", flag],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            LOGGER.warning("%s: ffmpeg %s failed (%s)", FFMPEG_PROBE_CODE, flag, exc)
            return frozenset()
        return parse_ffmpeg_listing(result.stdout)


def negotiate_encoding_profile(
    provider: CapabilityProvider,
    preferences: Sequence[EncodingProfile] = ENCODING_PREFERENCES,
) -> EncodingProfile | None:
    """Return the first supported profile from an ordered preference list."""
    for profile in preferences:
        if provider.supports(profile):
            LOGGER.debug("text_to_video.capability.selected: %s", profile.mime_type)
            return profile
    return None


def query_supported_mime_type(
    provider: CapabilityProvider,
    preferences: Sequence[EncodingProfile] = ENCODING_PREFERENCES,
) -> str | None:
    """Return the best supported mime type, or None when nothing is supported."""
    profile = negotiate_encoding_profile(provider, preferences)
    return profile.mime_type if profile else None


class VideoArtifact:
    """Encoded media returned by a generation run.

    An artifact owns its bytes until ``release`` is called; a released
    artifact refuses further reads.
    """

    def __init__(self, data: bytes, mime_type: str, file_extension: str) -> None:
        if not data:
            raise VideoGenerationError(ENCODER_FAILURE_CODE, "encoder produced no data")
        self._data: bytes | None = data
        self.mime_type = mime_type
        self.file_extension = file_extension
        self.size = len(data)

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise VideoGenerationError(ARTIFACT_RELEASED_CODE, "artifact was released")
        return self._data

    @property
    def suggested_filename(self) -> str:
        return f"{DEFAULT_FILENAME_STEM}.{self.file_extension}"

    def release(self) -> None:
        """Drop the encoded bytes."""
        self._data = None

    def __repr__(self) -> str:
        return (
            f"VideoArtifact(mime_type={self.mime_type!r}, size={self.size}, "
            f"released={self.released})"
        )


def build_ffmpeg_command(
    executable: str, profile: EncodingProfile, settings: EncoderSettings
) -> list[str]:
    """Build the ffmpeg command that turns raw RGBA on stdin into a container on stdout."""
    ffmpeg_cmd = [
        executable,
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{settings.width}x{settings.height}",
        "-r",
        str(settings.fps),
        "-i",
        "-",
        "-an",
        "-c:v",
        profile.codec,
        "-b:v",
        str(settings.bitrate),
    ]
    ffmpeg_cmd.extend(profile.args_builder(settings))
    ffmpeg_cmd.extend(["-pix_fmt", OUTPUT_PIXEL_FORMAT, "-f", profile.container, "-"])
    return ffmpeg_cmd


class FfmpegFrameEncoder:
    """Stream RGBA frames into an ffmpeg process and collect its output."""

    def __init__(
        self,
        profile: EncodingProfile,
        settings: EncoderSettings,
        ffmpeg_path: str | None = None,
    ) -> None:
        executable = resolve_ffmpeg_path(ffmpeg_path)
        if executable is None:
            raise VideoGenerationError(FFMPEG_NOT_FOUND_CODE, "ffmpeg not on PATH")
        self.profile = profile
        self.settings = settings
        self.frames_written = 0
        self._chunks: list[bytes] = []
        self._stderr_chunks: list[bytes] = []
        try:
            self._process = subprocess.Popen(
                build_ffmpeg_command(executable, profile, settings),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise VideoGenerationError(
                ENCODER_FAILURE_CODE, f"failed to start ffmpeg: {exc}"
            ) from exc
        self._readers = (
            threading.Thread(
                target=self._drain, args=(self._process.stdout, self._chunks), daemon=True
            ),
            threading.Thread(
                target=self._drain,
                args=(self._process.stderr, self._stderr_chunks),
                daemon=True,
            ),
        )
        for reader in self._readers:
            reader.start()
        LOGGER.debug(
            "text_to_video.encoder.started: %s %sx%s@%s",
            profile.mime_type,
            settings.width,
            settings.height,
            settings.fps,
        )

    @staticmethod
    def _drain(stream, sink: list[bytes]) -> None:
        if stream is None:
            return
        while True:
            chunk = stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            sink.append(chunk)

    def write_frame(self, frame: Image.Image) -> None:
        """Write one RGBA frame to ffmpeg."""
        if frame.size != (self.settings.width, self.settings.height):
            raise VideoGenerationError(
                ENCODER_FAILURE_CODE,
                f"frame size {frame.size} does not match "
                f"{self.settings.width}x{self.settings.height}",
            )
        if frame.mode != "RGBA":
            frame = frame.convert("RGBA")
        stdin = self._process.stdin
        if stdin is None or stdin.closed:
            raise VideoGenerationError(ENCODER_FAILURE_CODE, "ffmpeg stdin unavailable")
        try:
            stdin.write(frame.tobytes())
        except OSError as exc:
            raise VideoGenerationError(
                ENCODER_FAILURE_CODE, f"ffmpeg rejected frame: {self._stderr_text()}"
            ) from exc
        self.frames_written += 1

    def finalize(self) -> bytes:
        """Flush ffmpeg and return the complete container bytes."""
        stdin = self._process.stdin
        try:
            if stdin is not None and not stdin.closed:
                stdin.close()
        except OSError as exc:
            raise VideoGenerationError(
                ENCODER_FAILURE_CODE, f"ffmpeg flush failed: {self._stderr_text()}"
            ) from exc
        return_code = self._process.wait()
        for reader in self._readers:
            reader.join()
        if return_code != 0:
            raise VideoGenerationError(
                ENCODER_FAILURE_CODE,
                f"ffmpeg failed with exit code {return_code}. {self._stderr_text()}",
            )
        return b"".join(self._chunks)

    def close(self) -> None:
        """Stop ffmpeg if it is still running."""
        try:
            if self._process.stdin and not self._process.stdin.closed:
                self._process.stdin.close()
        except OSError:
            LOGGER.debug("text_to_video.encoder.close: stdin already broken")
        if self._process.poll() is None:
            self._process.kill()
            self._process.wait()
        for reader in self._readers:
            reader.join(timeout=1.0)

    def __enter__(self) -> FfmpegFrameEncoder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _stderr_text(self) -> str:
        return b"".join(self._stderr_chunks).decode("utf-8", errors="replace").strip()


def build_ffmpeg_encoder_factory(ffmpeg_path: str | None = None) -> EncoderFactory:
    """Return an encoder factory bound to an ffmpeg executable."""

    def factory(profile: EncodingProfile, settings: EncoderSettings) -> FrameEncoder:
        return FfmpegFrameEncoder(profile, settings, ffmpeg_path)

    return factory
