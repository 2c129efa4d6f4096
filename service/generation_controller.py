"""Generation state machine for text_to_video_studio."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from domain.script_text import ScriptValidationError
from domain.style_presets import find_style_preset
from service.capture_pipeline import (
    CaptureEncodePipeline,
    GenerationRequest,
    PreparedGeneration,
)
from service.video_encoder import (
    SESSION_CONFLICT_CODE,
    VideoArtifact,
    VideoGenerationError,
)

LOGGER = logging.getLogger("text_to_video.generation_controller")

SESSION_CANCELLED_CODE = "text_to_video.session.cancelled"
UNHANDLED_ERROR_CODE = "text_to_video.unhandled_error"


class GenerationState(str, Enum):
    """Lifecycle states of the controller."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


STATE_LABELS = {
    GenerationState.IDLE: "Ready to render",
    GenerationState.RECORDING: "Illustrating motion",
    GenerationState.PROCESSING: "Encoding video",
}


@dataclass(frozen=True)
class GenerationFailure:
    """Error recorded for the caller to display."""

    code: str
    message: str


@dataclass(frozen=True)
class GenerationStatus:
    """Snapshot of the observable controller state."""

    state: GenerationState
    progress: int
    error: GenerationFailure | None
    artifact: VideoArtifact | None

    @property
    def is_generating(self) -> bool:
        return self.state != GenerationState.IDLE

    @property
    def label(self) -> str:
        return STATE_LABELS[self.state]


StatusListener = Callable[[GenerationStatus], None]


class GenerationController:
    """Coordinate one generation at a time and expose its progress.

    ``start`` must be called from a running event loop. Failures never
    escape the session task; they are recorded as ``last_error``.
    """

    def __init__(self, pipeline: CaptureEncodePipeline) -> None:
        self.pipeline = pipeline
        self._lock = threading.Lock()
        self._state = GenerationState.IDLE
        self._progress = 0
        self._error: GenerationFailure | None = None
        self._artifact: VideoArtifact | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._listeners: list[StatusListener] = []

    @property
    def state(self) -> GenerationState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    @property
    def last_error(self) -> GenerationFailure | None:
        with self._lock:
            return self._error

    @property
    def last_artifact(self) -> VideoArtifact | None:
        with self._lock:
            return self._artifact

    def status(self) -> GenerationStatus:
        """Return a consistent snapshot of the observable state."""
        with self._lock:
            return self._snapshot()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener and return its unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(
        self, script: str, duration_seconds: int, style_id: str | None = None
    ) -> asyncio.Task[None] | None:
        """Start a generation; returns None when the request is rejected."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state != GenerationState.IDLE:
                LOGGER.warning(
                    "%s: start ignored while %s", SESSION_CONFLICT_CODE, self._state.value
                )
                return None

        try:
            request = GenerationRequest(
                script=script,
                duration_seconds=duration_seconds,
                style=find_style_preset(style_id),
            )
            prepared = self.pipeline.prepare(request)
        except (ScriptValidationError, VideoGenerationError) as exc:
            if exc.code == SESSION_CONFLICT_CODE:
                LOGGER.warning("%s: %s", exc.code, str(exc).strip())
                return None
            LOGGER.error("%s: %s", exc.code, str(exc).strip())
            self._finish(GenerationFailure(exc.code, str(exc).strip()))
            return None
        except Exception as exc:
            LOGGER.error("%s: %s", UNHANDLED_ERROR_CODE, str(exc).strip())
            self._finish(GenerationFailure(UNHANDLED_ERROR_CODE, str(exc).strip()))
            return None

        stop_event = asyncio.Event()
        with self._lock:
            self._state = GenerationState.RECORDING
            self._progress = 0
            self._error = None
            self._stop_event = stop_event
            snapshot = self._snapshot()
        self._notify(snapshot)
        task = loop.create_task(self._run(prepared, stop_event))
        self._task = task
        return task

    def cancel(self) -> None:
        """Stop recording early; whatever was captured is still encoded."""
        with self._lock:
            if self._state != GenerationState.RECORDING or self._stop_event is None:
                return
            stop_event = self._stop_event
        LOGGER.info("text_to_video.session.cancel_requested")
        stop_event.set()

    async def wait(self) -> GenerationStatus:
        """Wait for the active session, if any, and return the final status."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.status()

    async def shutdown(self) -> None:
        """Tear down the active session, discarding any partial output."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._task = None
        if self.state != GenerationState.IDLE:
            # cancelled before the session task ever ran
            self._finish(GenerationFailure(SESSION_CANCELLED_CODE, "generation was torn down"))

    async def _run(self, prepared: PreparedGeneration, stop_event: asyncio.Event) -> None:
        try:
            artifact = await self.pipeline.run(
                prepared,
                on_progress=self._handle_progress,
                on_processing=self._handle_processing,
                stop_event=stop_event,
            )
        except (ScriptValidationError, VideoGenerationError) as exc:
            LOGGER.error("%s: %s", exc.code, str(exc).strip())
            self._finish(GenerationFailure(exc.code, str(exc).strip()))
        except asyncio.CancelledError:
            LOGGER.warning("%s: session torn down", SESSION_CANCELLED_CODE)
            self._finish(GenerationFailure(SESSION_CANCELLED_CODE, "generation was torn down"))
            raise
        except Exception as exc:
            LOGGER.error("%s: %s", UNHANDLED_ERROR_CODE, str(exc).strip())
            self._finish(GenerationFailure(UNHANDLED_ERROR_CODE, str(exc).strip()))
        else:
            self._finish(None, artifact)
        finally:
            self._task = None

    def _handle_progress(self, progress: int) -> None:
        with self._lock:
            if progress <= self._progress:
                return
            self._progress = progress
            snapshot = self._snapshot()
        self._notify(snapshot)

    def _handle_processing(self) -> None:
        with self._lock:
            self._state = GenerationState.PROCESSING
            snapshot = self._snapshot()
        self._notify(snapshot)

    def _finish(
        self, error: GenerationFailure | None, artifact: VideoArtifact | None = None
    ) -> None:
        with self._lock:
            if artifact is not None:
                previous = self._artifact
                if previous is not None and previous is not artifact:
                    previous.release()
                self._artifact = artifact
            if error is not None:
                self._error = error
            self._state = GenerationState.IDLE
            self._stop_event = None
            snapshot = self._snapshot()
        self._notify(snapshot)

    def _snapshot(self) -> GenerationStatus:
        return GenerationStatus(
            state=self._state,
            progress=self._progress,
            error=self._error,
            artifact=self._artifact,
        )

    def _notify(self, snapshot: GenerationStatus) -> None:
        for listener in list(self._listeners):
            listener(snapshot)
