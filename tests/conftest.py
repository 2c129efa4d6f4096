"""Shared fixtures for text_to_video_studio tests."""

from __future__ import annotations

from typing import Callable, Iterable

import pytest

from service.capture_pipeline import CaptureEncodePipeline, TickSource
from service.frame_renderer import FrameRenderer, compute_font_size, load_text_font

from stubs import (
    ALL_MIME_TYPES,
    SMALL_HEIGHT,
    SMALL_WIDTH,
    RecordingEncoderFactory,
    StaticCapabilities,
    StepTickSource,
)


@pytest.fixture(scope="session")
def small_font():
    return load_text_font(compute_font_size(SMALL_HEIGHT), None)


@pytest.fixture
def small_surface_factory(small_font) -> Callable[[int, int], FrameRenderer]:
    """Surface factory that ignores the requested size to keep tests fast."""

    def factory(width: int, height: int) -> FrameRenderer:
        return FrameRenderer(SMALL_WIDTH, SMALL_HEIGHT, small_font)

    return factory


@pytest.fixture
def encoder_factory() -> RecordingEncoderFactory:
    return RecordingEncoderFactory()


@pytest.fixture
def make_pipeline(small_surface_factory, encoder_factory):
    """Build a pipeline wired to stubs."""

    def build(
        mime_types: Iterable[str] = ALL_MIME_TYPES,
        tick_source: TickSource | None = None,
    ) -> CaptureEncodePipeline:
        return CaptureEncodePipeline(
            capability_provider=StaticCapabilities(mime_types),
            encoder_factory=encoder_factory,
            tick_source=tick_source or StepTickSource(0.25),
            surface_factory=small_surface_factory,
        )

    return build
