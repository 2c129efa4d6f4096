"""Animation style presets for text_to_video_studio."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from domain.script_text import INVALID_CONFIG_CODE, ScriptValidationError


@dataclass(frozen=True)
class StylePreset:
    """Named bundle of animation parameters."""

    preset_id: str
    name: str
    description: str
    base_hue: float
    hue_cycle: float
    overlay_strength: float

    def __post_init__(self) -> None:
        if not self.preset_id.strip():
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "preset_id must be non-empty"
            )
        if self.base_hue < 0 or self.base_hue > 360:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "base_hue must be between 0 and 360"
            )
        if self.hue_cycle < 0:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "hue_cycle must be non-negative"
            )
        if self.overlay_strength < 0 or self.overlay_strength > 1:
            raise ScriptValidationError(
                INVALID_CONFIG_CODE, "overlay_strength must be between 0 and 1"
            )


STYLE_PRESETS: Tuple[StylePreset, ...] = (
    StylePreset(
        preset_id="aurora",
        name="Aurora Lights",
        description="Cool blues with luminous waves and light flares.",
        base_hue=210,
        hue_cycle=90,
        overlay_strength=0.22,
    ),
    StylePreset(
        preset_id="sunset",
        name="Golden Hour",
        description="Warm cinematic gradient with glowing highlights.",
        base_hue=28,
        hue_cycle=45,
        overlay_strength=0.27,
    ),
    StylePreset(
        preset_id="forest",
        name="Emerald Forest",
        description="Deep greens with emerald light rays and depth.",
        base_hue=140,
        hue_cycle=60,
        overlay_strength=0.25,
    ),
)
DEFAULT_STYLE_PRESET = STYLE_PRESETS[0]


def find_style_preset(preset_id: str | None) -> StylePreset:
    """Look up a preset by id, falling back to the first catalog entry."""
    if preset_id is None:
        return DEFAULT_STYLE_PRESET
    normalized = preset_id.strip().lower()
    for preset in STYLE_PRESETS:
        if preset.preset_id == normalized:
            return preset
    return DEFAULT_STYLE_PRESET
