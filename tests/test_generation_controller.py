"""Tests for the generation state machine."""

from __future__ import annotations

import asyncio

from domain.script_text import DEFAULT_SCRIPT, INVALID_DURATION_CODE
from service.capture_pipeline import CaptureEncodePipeline
from service.generation_controller import (
    SESSION_CANCELLED_CODE,
    UNHANDLED_ERROR_CODE,
    GenerationController,
    GenerationState,
    GenerationStatus,
)
from service.video_encoder import ENCODER_FAILURE_CODE, UNSUPPORTED_CAPABILITY_CODE

from stubs import ALL_MIME_TYPES, StaticCapabilities, StepTickSource


class StatusRecorder:
    """Listener that keeps every published status."""

    def __init__(self) -> None:
        self.statuses: list[GenerationStatus] = []

    def __call__(self, status: GenerationStatus) -> None:
        self.statuses.append(status)

    @property
    def states(self) -> list[GenerationState]:
        return [status.state for status in self.statuses]

    def entered(self, state: GenerationState) -> int:
        """Count transitions into a state."""
        count = 0
        previous = GenerationState.IDLE
        for current in self.states:
            if current == state and previous != state:
                count += 1
            previous = current
        return count


def test_full_run_reaches_processing_once(make_pipeline, encoder_factory) -> None:
    """A complete run records, encodes once and ends Idle at 100%."""
    controller = GenerationController(make_pipeline())
    recorder = StatusRecorder()
    controller.subscribe(recorder)

    async def scenario() -> GenerationStatus:
        task = controller.start(DEFAULT_SCRIPT, 8, "aurora")
        assert task is not None
        assert controller.state == GenerationState.RECORDING
        return await controller.wait()

    final = asyncio.run(scenario())

    assert final.state == GenerationState.IDLE
    assert final.progress == 100
    assert final.error is None
    assert final.artifact is not None
    assert final.artifact.suggested_filename == "text-to-video.webm"
    assert recorder.entered(GenerationState.RECORDING) == 1
    assert recorder.entered(GenerationState.PROCESSING) == 1
    assert recorder.states[-1] == GenerationState.IDLE
    assert len(encoder_factory.encoders) == 1
    progress = [status.progress for status in recorder.statuses]
    assert progress == sorted(progress)
    assert final.label == "Ready to render"


def test_double_start_runs_one_session(make_pipeline, encoder_factory) -> None:
    """A second start while busy is ignored without recording an error."""
    controller = GenerationController(make_pipeline())

    async def scenario():
        first = controller.start(DEFAULT_SCRIPT, 8)
        second = controller.start("Another script.", 5)
        await controller.wait()
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert len(encoder_factory.encoders) == 1
    assert controller.last_error is None
    assert controller.last_artifact is not None


def test_unsupported_capability_never_records(make_pipeline, encoder_factory) -> None:
    """Without codec support the error is recorded and recording never starts."""
    controller = GenerationController(make_pipeline(mime_types=()))
    recorder = StatusRecorder()
    controller.subscribe(recorder)

    async def scenario():
        return controller.start(DEFAULT_SCRIPT, 8)

    assert asyncio.run(scenario()) is None
    assert controller.state == GenerationState.IDLE
    assert controller.last_error is not None
    assert controller.last_error.code == UNSUPPORTED_CAPABILITY_CODE
    assert GenerationState.RECORDING not in recorder.states
    assert encoder_factory.encoders == []


def test_invalid_duration_is_recorded(make_pipeline) -> None:
    """Input errors are recorded instead of raised."""
    controller = GenerationController(make_pipeline())

    async def scenario():
        return controller.start(DEFAULT_SCRIPT, 30)

    assert asyncio.run(scenario()) is None
    assert controller.last_error is not None
    assert controller.last_error.code == INVALID_DURATION_CODE


def test_unexpected_setup_error_is_recorded(encoder_factory) -> None:
    """Unexpected errors while preparing are recorded instead of raised."""

    def failing_surface_factory(width: int, height: int):
        raise RuntimeError("surface driver crashed")

    controller = GenerationController(
        CaptureEncodePipeline(
            capability_provider=StaticCapabilities(ALL_MIME_TYPES),
            encoder_factory=encoder_factory,
            surface_factory=failing_surface_factory,
        )
    )

    async def scenario():
        return controller.start(DEFAULT_SCRIPT, 8)

    assert asyncio.run(scenario()) is None
    assert controller.state == GenerationState.IDLE
    assert controller.last_error is not None
    assert controller.last_error.code == UNHANDLED_ERROR_CODE
    assert controller.last_error.message == "surface driver crashed"
    assert encoder_factory.encoders == []


def test_cancel_mid_recording_releases_encoder_before_idle(
    make_pipeline, encoder_factory
) -> None:
    """Cancelling flushes the partial clip and closes the encoder first."""
    controller = GenerationController(make_pipeline())
    closed_when_idle: list[bool] = []

    def listener(status: GenerationStatus) -> None:
        if status.state == GenerationState.RECORDING and status.progress >= 30:
            controller.cancel()
        if status.state == GenerationState.IDLE and encoder_factory.encoders:
            closed_when_idle.append(encoder_factory.encoders[0].closed)

    controller.subscribe(listener)

    async def scenario() -> GenerationStatus:
        controller.start(DEFAULT_SCRIPT, 8)
        return await controller.wait()

    final = asyncio.run(scenario())

    encoder = encoder_factory.encoders[0]
    assert closed_when_idle == [True]
    assert encoder.finalized
    assert 0 < encoder.frames_written < 240
    assert final.artifact is not None
    assert final.error is None
    assert 30 <= final.progress < 100


def test_cancel_before_first_tick_discards(make_pipeline, encoder_factory) -> None:
    """Cancelling before recording began leaves nothing behind."""
    controller = GenerationController(make_pipeline())

    async def scenario() -> GenerationStatus:
        controller.start(DEFAULT_SCRIPT, 8)
        controller.cancel()
        return await controller.wait()

    final = asyncio.run(scenario())

    assert final.state == GenerationState.IDLE
    assert final.artifact is None
    assert final.error is None
    assert encoder_factory.encoders == []


def test_encoder_failure_keeps_previous_artifact(make_pipeline, encoder_factory) -> None:
    """A failed run skips processing and keeps the last good artifact."""
    controller = GenerationController(make_pipeline())
    recorder = StatusRecorder()

    async def scenario() -> GenerationStatus:
        controller.start(DEFAULT_SCRIPT, 8)
        await controller.wait()
        controller.subscribe(recorder)
        encoder_factory.fail_on_frame = 3
        controller.start(DEFAULT_SCRIPT, 8)
        return await controller.wait()

    final = asyncio.run(scenario())

    previous = encoder_factory.encoders[0]
    failed = encoder_factory.encoders[1]
    assert final.error is not None
    assert final.error.code == ENCODER_FAILURE_CODE
    assert final.artifact is not None
    assert not final.artifact.released
    assert final.artifact.data == f"libvpx-vp9:{previous.frames_written}".encode("utf-8")
    assert failed.closed
    assert GenerationState.PROCESSING not in recorder.states
    assert recorder.states[-1] == GenerationState.IDLE


def test_new_artifact_releases_previous(make_pipeline) -> None:
    """Installing a new artifact releases the one it replaces."""
    controller = GenerationController(make_pipeline())

    async def scenario():
        controller.start(DEFAULT_SCRIPT, 4)
        first = (await controller.wait()).artifact
        controller.start(DEFAULT_SCRIPT, 4)
        second = (await controller.wait()).artifact
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None and second is not None
    assert first is not second
    assert first.released
    assert not second.released


def test_shutdown_discards_session(make_pipeline, encoder_factory) -> None:
    """Tearing down mid-recording closes the encoder without an artifact."""
    controller = GenerationController(make_pipeline(tick_source=StepTickSource(0.01)))

    async def scenario() -> None:
        task = controller.start(DEFAULT_SCRIPT, 8)
        for _ in range(5):
            await asyncio.sleep(0)
        await controller.shutdown()
        assert task is not None and task.cancelled()

    asyncio.run(scenario())

    assert controller.state == GenerationState.IDLE
    assert controller.last_artifact is None
    assert controller.last_error is not None
    assert controller.last_error.code == SESSION_CANCELLED_CODE
    assert encoder_factory.encoders[0].closed
    assert not encoder_factory.encoders[0].finalized
