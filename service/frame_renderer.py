"""Deterministic frame rendering for text_to_video_studio."""

from __future__ import annotations

import colorsys
import logging
import math
import os
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageFont

from domain.script_text import FONT_DIR_CODE, FONT_LOAD_CODE, ScriptValidationError
from domain.style_presets import StylePreset

LOGGER = logging.getLogger("text_to_video.frame_renderer")

GRADIENT_START_SATURATION = 0.78
GRADIENT_START_LIGHTNESS = 0.58
GRADIENT_END_SATURATION = 0.72
GRADIENT_END_LIGHTNESS = 0.32
SECONDARY_HUE_RATIO = 0.6
OVERLAY_HUE_SHIFT = 24
OVERLAY_SATURATION = 0.90
OVERLAY_LIGHTNESS = 0.68
ELLIPSE_CENTER_RATIO = (0.45, 0.42)
ELLIPSE_SEGMENTS = 180
HIGHLIGHT_INNER_CENTER_RATIO = (0.52, 0.28)
HIGHLIGHT_INNER_RADIUS_RATIO = 0.08
HIGHLIGHT_OUTER_CENTER_RATIO = (0.5, 0.5)
HIGHLIGHT_OUTER_RADIUS_RATIO = 0.7
HIGHLIGHT_STOP_OFFSETS = (0.0, 0.55, 1.0)
HIGHLIGHT_STOP_ALPHAS = (0.28, 0.08, 0.0)
TRAIL_COUNT = 12
TRAIL_PROGRESS_STEP = 0.015
TRAIL_BASE_OPACITY = 0.06
TRAIL_HUE_SHIFT = 12
TRAIL_SATURATION = 0.80
TRAIL_LIGHTNESS = 0.60
TRAIL_WIDTH = 2
TRAIL_SEGMENTS = 64
VIGNETTE_TOP_RATIO = 0.78
VIGNETTE_RGBA = (15, 23, 42, 41)
FONT_HEIGHT_RATIO = 0.09
LINE_HEIGHT_RATIO = 1.18
TEXT_CENTER_RATIO = 0.48
TEXT_PULSE_AMPLITUDE = 0.015
TEXT_RGBA = (255, 255, 255, 245)
SHADOW_RGBA = (15, 23, 42, 115)
SHADOW_BLUR_RADIUS = 24
PROGRESS_WIDTH_RATIO = 0.6
PROGRESS_TOP_RATIO = 0.84
PROGRESS_HEIGHT = 10
PROGRESS_GROUP_ALPHA = 0.72
PROGRESS_TRACK_ALPHA = 0.18
PROGRESS_FILL_ALPHA = 0.88

Point = Tuple[float, float]
Box = Tuple[int, int, int, int]
RGB = Tuple[int, int, int]
RGBA = Tuple[int, int, int, int]


@dataclass(frozen=True)
class GradientLayer:
    """Diagonal background gradient between two colors."""

    start_rgb: RGB
    end_rgb: RGB


@dataclass(frozen=True)
class EllipseLayer:
    """Rotated translucent ellipse."""

    center: Point
    radii: Point
    rotation: float
    rgba: RGBA


@dataclass(frozen=True)
class HighlightLayer:
    """Two-circle radial gradient blended additively."""

    inner_center: Point
    inner_radius: float
    outer_center: Point
    outer_radius: float


@dataclass(frozen=True)
class TrailStroke:
    """Single cubic Bezier trail stroke."""

    control_points: Tuple[Point, Point, Point, Point]
    local_progress: float
    rgba: RGBA


@dataclass(frozen=True)
class TextPlacement:
    """Position, opacity and scale of one display line."""

    text: str
    center: Point
    local_progress: float
    opacity: float
    scale: float


@dataclass(frozen=True)
class ProgressBarLayer:
    """Progress track and its filled portion."""

    track_box: Box
    fill_width: int
    track_rgba: RGBA
    fill_rgba: RGBA


@dataclass(frozen=True)
class FrameLayout:
    """All layer values for a single frame, in compositing order."""

    width: int
    height: int
    progress: float
    hue_primary: float
    hue_secondary: float
    wave: float
    gradient: GradientLayer
    ellipse: EllipseLayer
    highlight: HighlightLayer
    trails: Tuple[TrailStroke, ...]
    vignette_box: Box
    vignette_rgba: RGBA
    font_size: int
    line_height: int
    text_lines: Tuple[TextPlacement, ...]
    progress_bar: ProgressBarLayer


@dataclass(frozen=True)
class LineSprite:
    """Pre-rendered text line with its shadow, anchored at the text center."""

    image: Image.Image
    anchor: Point


def clamp(value: float, min_value: float = 0.0, max_value: float = 1.0) -> float:
    """Clamp a float between min and max."""
    return min(max_value, max(min_value, value))


def ease_in_out_cubic(value: float) -> float:
    """Cubic ease-in-out curve on [0, 1]."""
    if value < 0.5:
        return 4 * value * value * value
    return 1 - math.pow(-2 * value + 2, 3) / 2


def hsl_to_rgb(hue: float, saturation: float, lightness: float) -> RGB:
    """Convert an HSL color (hue in degrees) to 8-bit RGB."""
    red, green, blue = colorsys.hls_to_rgb((hue % 360) / 360.0, lightness, saturation)
    return (
        int(round(red * 255)),
        int(round(green * 255)),
        int(round(blue * 255)),
    )


def alpha_to_byte(alpha: float) -> int:
    """Convert a 0..1 alpha into an 8-bit channel value."""
    return int(round(clamp(alpha) * 255))


def compute_font_size(frame_height: int) -> int:
    """Compute the text font size for a frame height."""
    return max(1, int(round(frame_height * FONT_HEIGHT_RATIO)))


def compute_line_local_progress(progress: float, index: int, line_count: int) -> float:
    """Local progress of a line inside its equal-width temporal segment.

    Line ``index`` owns ``[index / n, (index + 1) / n)``; scaling by ``n``
    keeps the segment end exact so the last line is fully revealed at 1.
    """
    return clamp(progress * max(1, line_count) - index)


def cubic_bezier_points(
    control_points: Tuple[Point, Point, Point, Point], segments: int
) -> list[Point]:
    """Sample a cubic Bezier curve into a polyline."""
    (x0, y0), (x1, y1), (x2, y2), (x3, y3) = control_points
    points: list[Point] = []
    for step in range(segments + 1):
        t = step / segments
        inverse = 1.0 - t
        a = inverse * inverse * inverse
        b = 3 * inverse * inverse * t
        c = 3 * inverse * t * t
        d = t * t * t
        points.append(
            (a * x0 + b * x1 + c * x2 + d * x3, a * y0 + b * y1 + c * y2 + d * y3)
        )
    return points


def ellipse_polygon(layer: EllipseLayer, segments: int) -> list[Point]:
    """Approximate a rotated ellipse with a polygon."""
    center_x, center_y = layer.center
    radius_x, radius_y = layer.radii
    cos_r = math.cos(layer.rotation)
    sin_r = math.sin(layer.rotation)
    points: list[Point] = []
    for step in range(segments):
        theta = 2 * math.pi * step / segments
        local_x = radius_x * math.cos(theta)
        local_y = radius_y * math.sin(theta)
        points.append(
            (
                center_x + local_x * cos_r - local_y * sin_r,
                center_y + local_x * sin_r + local_y * cos_r,
            )
        )
    return points


def compute_frame_layout(
    progress: float,
    lines: Sequence[str],
    style: StylePreset,
    width: int,
    height: int,
) -> FrameLayout:
    """Compute every layer value for a frame.

    This is a pure function of its arguments; ``progress`` is the only
    temporal input and is clamped to [0, 1].
    """
    progress = clamp(progress)
    hue_primary = (style.base_hue + progress * style.hue_cycle) % 360
    hue_secondary = (hue_primary + style.hue_cycle * SECONDARY_HUE_RATIO) % 360
    wave = math.sin(progress * math.pi * 2)

    gradient = GradientLayer(
        start_rgb=hsl_to_rgb(
            hue_primary, GRADIENT_START_SATURATION, GRADIENT_START_LIGHTNESS
        ),
        end_rgb=hsl_to_rgb(hue_secondary, GRADIENT_END_SATURATION, GRADIENT_END_LIGHTNESS),
    )

    ellipse = EllipseLayer(
        center=(width * ELLIPSE_CENTER_RATIO[0], height * ELLIPSE_CENTER_RATIO[1]),
        radii=(width * (0.8 + wave * 0.05), height * (0.55 + wave * 0.04)),
        rotation=progress * math.pi,
        rgba=hsl_to_rgb(
            hue_primary + OVERLAY_HUE_SHIFT, OVERLAY_SATURATION, OVERLAY_LIGHTNESS
        )
        + (alpha_to_byte(style.overlay_strength),),
    )

    highlight = HighlightLayer(
        inner_center=(
            width * HIGHLIGHT_INNER_CENTER_RATIO[0],
            height * (HIGHLIGHT_INNER_CENTER_RATIO[1] + wave * 0.02),
        ),
        inner_radius=width * HIGHLIGHT_INNER_RADIUS_RATIO,
        outer_center=(
            width * HIGHLIGHT_OUTER_CENTER_RATIO[0],
            height * HIGHLIGHT_OUTER_CENTER_RATIO[1],
        ),
        outer_radius=width * HIGHLIGHT_OUTER_RADIUS_RATIO,
    )

    trail_rgb = hsl_to_rgb(hue_secondary + TRAIL_HUE_SHIFT, TRAIL_SATURATION, TRAIL_LIGHTNESS)
    trails: list[TrailStroke] = []
    for index in range(TRAIL_COUNT):
        local_progress = clamp(progress - index * TRAIL_PROGRESS_STEP)
        opacity = TRAIL_BASE_OPACITY * (1 - index / TRAIL_COUNT)
        trails.append(
            TrailStroke(
                control_points=(
                    (width * 0.1, height * (0.65 + local_progress * 0.05)),
                    (width * 0.3, height * (0.45 + wave * 0.05)),
                    (width * 0.7, height * (0.75 - wave * 0.04)),
                    (width * 0.9, height * (0.62 + local_progress * 0.03)),
                ),
                local_progress=local_progress,
                rgba=trail_rgb + (alpha_to_byte(opacity),),
            )
        )

    vignette_top = int(round(height * VIGNETTE_TOP_RATIO))

    font_size = compute_font_size(height)
    line_height = int(round(font_size * LINE_HEIGHT_RATIO))
    line_count = len(lines)
    start_y = height * TEXT_CENTER_RATIO - ((line_count - 1) / 2.0) * line_height
    placements: list[TextPlacement] = []
    for index, text in enumerate(lines):
        local_progress = compute_line_local_progress(progress, index, line_count)
        placements.append(
            TextPlacement(
                text=text,
                center=(width / 2.0, start_y + index * line_height),
                local_progress=local_progress,
                opacity=ease_in_out_cubic(local_progress),
                scale=1 + math.sin(progress * math.pi * 2 + index) * TEXT_PULSE_AMPLITUDE,
            )
        )

    track_width = width * PROGRESS_WIDTH_RATIO
    track_left = (width - track_width) / 2.0
    track_top = height * PROGRESS_TOP_RATIO
    track_box = (
        int(round(track_left)),
        int(round(track_top)),
        int(round(track_left + track_width)),
        int(round(track_top)) + PROGRESS_HEIGHT,
    )
    progress_bar = ProgressBarLayer(
        track_box=track_box,
        fill_width=int(round((track_box[2] - track_box[0]) * progress)),
        track_rgba=(255, 255, 255, alpha_to_byte(PROGRESS_TRACK_ALPHA * PROGRESS_GROUP_ALPHA)),
        fill_rgba=(255, 255, 255, alpha_to_byte(PROGRESS_FILL_ALPHA * PROGRESS_GROUP_ALPHA)),
    )

    return FrameLayout(
        width=width,
        height=height,
        progress=progress,
        hue_primary=hue_primary,
        hue_secondary=hue_secondary,
        wave=wave,
        gradient=gradient,
        ellipse=ellipse,
        highlight=highlight,
        trails=tuple(trails),
        vignette_box=(0, vignette_top, width, height),
        vignette_rgba=VIGNETTE_RGBA,
        font_size=font_size,
        line_height=line_height,
        text_lines=tuple(placements),
        progress_bar=progress_bar,
    )


def composite_clipped(
    frame: Image.Image, layer: Image.Image, left: int, top: int
) -> None:
    """Alpha-composite a layer onto the frame, clipping at the frame edges."""
    crop_left = max(0, -left)
    crop_top = max(0, -top)
    if crop_left >= layer.width or crop_top >= layer.height:
        return
    if left >= frame.width or top >= frame.height:
        return
    if crop_left or crop_top:
        layer = layer.crop((crop_left, crop_top, layer.width, layer.height))
    frame.alpha_composite(layer, dest=(left + crop_left, top + crop_top))


def list_font_files(fonts_dir: str) -> list[str]:
    """List font files from the fonts directory."""
    if not os.path.isdir(fonts_dir):
        raise ScriptValidationError(
            FONT_DIR_CODE, f"fonts directory does not exist: {fonts_dir}"
        )

    font_files = [
        os.path.join(fonts_dir, entry_name)
        for entry_name in sorted(os.listdir(fonts_dir))
        if entry_name.lower().endswith((".ttf", ".otf"))
    ]
    if not font_files:
        raise ScriptValidationError(FONT_DIR_CODE, f"no font files found in {fonts_dir}")
    return font_files


def load_text_font(font_size: int, fonts_dir: str | None) -> ImageFont.FreeTypeFont:
    """Load the text font, from a fonts directory or Pillow's bundled font."""
    if fonts_dir is None:
        font = ImageFont.load_default(size=font_size)
        if not isinstance(font, ImageFont.FreeTypeFont):
            raise ScriptValidationError(
                FONT_LOAD_CODE,
                "bundled font is not scalable; configure a fonts directory",
            )
        return font

    for font_file_path in list_font_files(fonts_dir):
        try:
            return ImageFont.truetype(font_file_path, size=font_size)
        except OSError as exc:
            LOGGER.warning(
                "%s: skipped font %s (%s)",
                FONT_LOAD_CODE,
                font_file_path,
                str(exc).strip(),
            )
    raise ScriptValidationError(
        FONT_LOAD_CODE, "failed to load any fonts from fonts directory"
    )


def render_line_sprite(text: str, font: ImageFont.FreeTypeFont) -> LineSprite:
    """Render a text line and its blurred drop shadow into one sprite."""
    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = measure.textbbox((0, 0), text, font=font, anchor="mm")
    padding = SHADOW_BLUR_RADIUS * 2
    sprite_size = (max(1, right - left) + padding * 2, max(1, bottom - top) + padding * 2)
    anchor = (float(padding - left), float(padding - top))

    shadow = Image.new("RGBA", sprite_size, SHADOW_RGBA[:3] + (0,))
    ImageDraw.Draw(shadow).text(anchor, text, font=font, fill=SHADOW_RGBA, anchor="mm")
    shadow = shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR_RADIUS))

    glyphs = Image.new("RGBA", sprite_size, TEXT_RGBA[:3] + (0,))
    ImageDraw.Draw(glyphs).text(anchor, text, font=font, fill=TEXT_RGBA, anchor="mm")
    return LineSprite(image=Image.alpha_composite(shadow, glyphs), anchor=anchor)


class FrameRenderer:
    """Render frames of a fixed size with a fixed font.

    Output depends only on the ``render`` arguments; the instance merely
    memoizes per-size coordinate grids and per-line text sprites.
    """

    def __init__(self, width: int, height: int, font: ImageFont.FreeTypeFont) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("frame width and height must be positive")
        self.width = width
        self.height = height
        self.font = font
        yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
        self._pixel_x = xx + 0.5
        self._pixel_y = yy + 0.5
        self._gradient_ramp = np.clip(
            (self._pixel_x * width + self._pixel_y * height)
            / float(width * width + height * height),
            0.0,
            1.0,
        )[..., np.newaxis]
        self._sprites: dict[str, LineSprite] = {}

    def prepare_lines(self, lines: Sequence[str]) -> None:
        """Pre-render sprites for one generation run, dropping earlier runs' sprites."""
        sprites: dict[str, LineSprite] = {}
        for text in lines:
            sprites[text] = self._line_sprite(text)
        self._sprites = sprites

    def layout(
        self, progress: float, lines: Sequence[str], style: StylePreset
    ) -> FrameLayout:
        """Compute the frame layout for this surface size."""
        return compute_frame_layout(progress, lines, style, self.width, self.height)

    def render(
        self, progress: float, lines: Sequence[str], style: StylePreset
    ) -> Image.Image:
        """Render a fully composited RGBA frame."""
        return self.render_layout(self.layout(progress, lines, style))

    def render_layout(self, layout: FrameLayout) -> Image.Image:
        """Composite the layers of a layout in their fixed order."""
        frame = self._draw_gradient(layout.gradient)
        self._draw_ellipse(frame, layout.ellipse)
        frame = self._draw_highlight(frame, layout.highlight)
        for stroke in layout.trails:
            self._draw_trail(frame, stroke)
        self._draw_vignette(frame, layout.vignette_box, layout.vignette_rgba)
        for placement in layout.text_lines:
            self._draw_text_line(frame, placement)
        self._draw_progress_bar(frame, layout.progress_bar)
        return frame

    def _draw_gradient(self, gradient: GradientLayer) -> Image.Image:
        start = np.array(gradient.start_rgb, dtype=np.float64)
        end = np.array(gradient.end_rgb, dtype=np.float64)
        rgb = start + (end - start) * self._gradient_ramp
        rgb_bytes = np.rint(rgb).astype(np.uint8)
        alpha = np.full((self.height, self.width, 1), 255, dtype=np.uint8)
        return Image.fromarray(np.concatenate([rgb_bytes, alpha], axis=2))

    def _draw_ellipse(self, frame: Image.Image, ellipse: EllipseLayer) -> None:
        overlay = Image.new("RGBA", frame.size, ellipse.rgba[:3] + (0,))
        ImageDraw.Draw(overlay).polygon(
            ellipse_polygon(ellipse, ELLIPSE_SEGMENTS), fill=ellipse.rgba
        )
        frame.alpha_composite(overlay)

    def _draw_highlight(self, frame: Image.Image, highlight: HighlightLayer) -> Image.Image:
        inner_x, inner_y = highlight.inner_center
        delta_x = highlight.outer_center[0] - inner_x
        delta_y = highlight.outer_center[1] - inner_y
        delta_r = highlight.outer_radius - highlight.inner_radius
        offset_x = self._pixel_x - inner_x
        offset_y = self._pixel_y - inner_y

        # Largest t with |p - c(t)| == r(t), c and r interpolated between circles.
        a = delta_x * delta_x + delta_y * delta_y - delta_r * delta_r
        b = offset_x * delta_x + offset_y * delta_y + highlight.inner_radius * delta_r
        c = offset_x * offset_x + offset_y * offset_y - highlight.inner_radius**2
        if abs(a) < 1e-9:
            t = c / (2 * b)
        else:
            discriminant = np.sqrt(np.maximum(b * b - a * c, 0.0))
            t = np.maximum((b + discriminant) / a, (b - discriminant) / a)
        t = np.clip(t, 0.0, 1.0)
        alpha = np.interp(t, HIGHLIGHT_STOP_OFFSETS, HIGHLIGHT_STOP_ALPHAS)

        pixels = np.asarray(frame, dtype=np.float64).copy()
        pixels[..., :3] = np.minimum(255.0, pixels[..., :3] + alpha[..., np.newaxis] * 255.0)
        return Image.fromarray(np.rint(pixels).astype(np.uint8))

    def _draw_trail(self, frame: Image.Image, stroke: TrailStroke) -> None:
        if stroke.rgba[3] == 0:
            return
        points = cubic_bezier_points(stroke.control_points, TRAIL_SEGMENTS)
        left = int(math.floor(min(x for x, _ in points))) - TRAIL_WIDTH
        top = int(math.floor(min(y for _, y in points))) - TRAIL_WIDTH
        right = int(math.ceil(max(x for x, _ in points))) + TRAIL_WIDTH
        bottom = int(math.ceil(max(y for _, y in points))) + TRAIL_WIDTH
        layer = Image.new(
            "RGBA", (max(1, right - left), max(1, bottom - top)), stroke.rgba[:3] + (0,)
        )
        ImageDraw.Draw(layer).line(
            [(x - left, y - top) for x, y in points],
            fill=stroke.rgba,
            width=TRAIL_WIDTH,
            joint="curve",
        )
        composite_clipped(frame, layer, left, top)

    def _draw_vignette(self, frame: Image.Image, box: Box, rgba: RGBA) -> None:
        left, top, right, bottom = box
        if right <= left or bottom <= top:
            return
        composite_clipped(frame, Image.new("RGBA", (right - left, bottom - top), rgba), left, top)

    def _draw_text_line(self, frame: Image.Image, placement: TextPlacement) -> None:
        if placement.opacity <= 0:
            return
        sprite = self._line_sprite(placement.text)
        image = sprite.image
        anchor_x, anchor_y = sprite.anchor
        if placement.scale != 1.0:
            scaled_size = (
                max(1, int(round(image.width * placement.scale))),
                max(1, int(round(image.height * placement.scale))),
            )
            image = image.resize(scaled_size, Image.Resampling.BICUBIC)
            anchor_x *= placement.scale
            anchor_y *= placement.scale
        if placement.opacity < 1.0:
            alpha_table = [int(round(value * placement.opacity)) for value in range(256)]
            image = image.copy()
            image.putalpha(image.getchannel("A").point(alpha_table))
        composite_clipped(
            frame,
            image,
            int(round(placement.center[0] - anchor_x)),
            int(round(placement.center[1] - anchor_y)),
        )

    def _draw_progress_bar(self, frame: Image.Image, bar: ProgressBarLayer) -> None:
        left, top, right, bottom = bar.track_box
        track_size = (max(1, right - left), max(1, bottom - top))
        composite_clipped(frame, Image.new("RGBA", track_size, bar.track_rgba), left, top)
        if bar.fill_width > 0:
            composite_clipped(
                frame,
                Image.new("RGBA", (bar.fill_width, track_size[1]), bar.fill_rgba),
                left,
                top,
            )

    def _line_sprite(self, text: str) -> LineSprite:
        sprite = self._sprites.get(text)
        if sprite is None:
            sprite = render_line_sprite(text, self.font)
            self._sprites[text] = sprite
        return sprite
