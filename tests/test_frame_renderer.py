"""Unit tests for frame layout and rendering."""

from __future__ import annotations

from pathlib import Path

import pytest

from domain.script_text import FONT_DIR_CODE, ScriptValidationError
from domain.style_presets import STYLE_PRESETS
from service.frame_renderer import (
    TRAIL_COUNT,
    FrameRenderer,
    alpha_to_byte,
    compute_frame_layout,
    compute_line_local_progress,
    ease_in_out_cubic,
    list_font_files,
)

WIDTH = 160
HEIGHT = 90
LINES = ("Welcome to the future.", "Every word moves.", "Craft stories fast.")
AURORA = STYLE_PRESETS[0]


@pytest.fixture(scope="module")
def renderer(small_font) -> FrameRenderer:
    return FrameRenderer(WIDTH, HEIGHT, small_font)


def test_layout_is_deterministic() -> None:
    """Equal inputs give equal layouts."""
    first = compute_frame_layout(0.37, LINES, AURORA, WIDTH, HEIGHT)
    second = compute_frame_layout(0.37, LINES, AURORA, WIDTH, HEIGHT)
    assert first == second


def test_render_is_deterministic(small_font, renderer: FrameRenderer) -> None:
    """Equal inputs give identical pixels, even across renderer instances."""
    fresh = FrameRenderer(WIDTH, HEIGHT, small_font)
    first = renderer.render(0.61, LINES, STYLE_PRESETS[2])
    second = fresh.render(0.61, LINES, STYLE_PRESETS[2])
    assert first.mode == "RGBA"
    assert first.size == (WIDTH, HEIGHT)
    assert first.tobytes() == second.tobytes()


def test_layout_at_start_hides_text_and_progress() -> None:
    """At progress 0 no line is visible and the bar is empty."""
    layout = compute_frame_layout(0.0, LINES, AURORA, WIDTH, HEIGHT)
    assert all(placement.opacity == 0 for placement in layout.text_lines)
    assert layout.progress_bar.fill_width == 0


def test_layout_at_end_shows_every_line_and_full_bar() -> None:
    """At progress 1 every line is fully visible and the bar is full."""
    layout = compute_frame_layout(1.0, LINES, AURORA, WIDTH, HEIGHT)
    assert [placement.opacity for placement in layout.text_lines] == [1.0, 1.0, 1.0]
    track_left, _, track_right, _ = layout.progress_bar.track_box
    assert layout.progress_bar.fill_width == track_right - track_left


def test_layout_clamps_progress() -> None:
    """Out-of-range progress renders like the nearest bound."""
    assert compute_frame_layout(-0.5, LINES, AURORA, WIDTH, HEIGHT) == compute_frame_layout(
        0.0, LINES, AURORA, WIDTH, HEIGHT
    )
    assert compute_frame_layout(1.7, LINES, AURORA, WIDTH, HEIGHT) == compute_frame_layout(
        1.0, LINES, AURORA, WIDTH, HEIGHT
    )


def test_layout_hues_follow_preset() -> None:
    """Primary and secondary hues derive from the preset and progress."""
    layout = compute_frame_layout(0.5, LINES, AURORA, WIDTH, HEIGHT)
    assert layout.hue_primary == pytest.approx(255.0)
    assert layout.hue_secondary == pytest.approx(309.0)

    wrapped = compute_frame_layout(1.0, LINES, STYLE_PRESETS[0], WIDTH, HEIGHT)
    assert wrapped.hue_primary == pytest.approx(300.0)
    assert wrapped.hue_secondary == pytest.approx(354.0)


def test_layout_trails_fade_with_index() -> None:
    """Trail strokes lag behind progress and fade out with their index."""
    layout = compute_frame_layout(0.5, LINES, AURORA, WIDTH, HEIGHT)
    assert len(layout.trails) == TRAIL_COUNT
    assert layout.trails[0].rgba[3] == alpha_to_byte(0.06)
    alphas = [stroke.rgba[3] for stroke in layout.trails]
    assert alphas == sorted(alphas, reverse=True)
    lags = [stroke.local_progress for stroke in layout.trails]
    assert lags[0] == pytest.approx(0.5)
    assert lags[-1] == pytest.approx(0.5 - 11 * 0.015)


def test_layout_centers_text_block() -> None:
    """Lines are stacked symmetrically around the text center."""
    layout = compute_frame_layout(0.5, LINES, AURORA, WIDTH, HEIGHT)
    centers = [placement.center[1] for placement in layout.text_lines]
    assert centers[1] == pytest.approx(HEIGHT * 0.48)
    assert centers[1] - centers[0] == pytest.approx(layout.line_height)
    assert all(placement.center[0] == WIDTH / 2 for placement in layout.text_lines)


def test_line_local_progress_splits_timeline() -> None:
    """Each line owns an equal slice of the timeline."""
    assert [compute_line_local_progress(0.5, index, 3) for index in range(3)] == [
        1.0,
        0.5,
        0.0,
    ]
    assert compute_line_local_progress(0.3, 0, 1) == pytest.approx(0.3)


def test_ease_in_out_cubic_endpoints() -> None:
    """The easing curve is anchored at 0, 0.5 and 1."""
    assert ease_in_out_cubic(0.0) == 0.0
    assert ease_in_out_cubic(0.5) == pytest.approx(0.5)
    assert ease_in_out_cubic(1.0) == 1.0


def test_text_changes_pixels(renderer: FrameRenderer) -> None:
    """Revealed text is drawn into the frame."""
    with_text = renderer.render(1.0, ("HELLO",), AURORA)
    other_text = renderer.render(1.0, ("WORLD",), AURORA)
    assert with_text.tobytes() != other_text.tobytes()


def test_list_font_files_rejects_missing_dir(tmp_path: Path) -> None:
    """A missing fonts directory is reported with a code."""
    with pytest.raises(ScriptValidationError) as exc_info:
        list_font_files(str(tmp_path / "missing"))
    assert exc_info.value.code == FONT_DIR_CODE


def test_list_font_files_rejects_empty_dir(tmp_path: Path) -> None:
    """A fonts directory without font files is reported with a code."""
    (tmp_path / "readme.txt").write_text("no fonts", encoding="utf-8")
    with pytest.raises(ScriptValidationError) as exc_info:
        list_font_files(str(tmp_path))
    assert exc_info.value.code == FONT_DIR_CODE
