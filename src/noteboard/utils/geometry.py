import math
import re
from dataclasses import dataclass
from typing import Tuple

_HEX_COLOR = re.compile(r"^#([0-9a-fA-F]{6})$")
_RGBA_COLOR = re.compile(r"^rgba\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*([0-9.]+)\s*\)$")


@dataclass(frozen=True)
class Viewport:
    """Pan offset and zoom of the canvas, in screen pixels."""

    pan_x: float = 0.0
    pan_y: float = 0.0
    scale: float = 1.0

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise ValueError(f"zoom scale must be positive, got {self.scale}")

    def to_canvas(self, screen_x: float, screen_y: float) -> Tuple[float, float]:
        return (screen_x - self.pan_x) / self.scale, (screen_y - self.pan_y) / self.scale


def pointer_angle(center: Tuple[float, float], point: Tuple[float, float]) -> float:
    """Angle in degrees of ``point`` around ``center``."""
    return math.degrees(math.atan2(point[1] - center[1], point[0] - center[0]))


def is_valid_color(color: str) -> bool:
    return bool(_HEX_COLOR.match(color) or _RGBA_COLOR.match(color))


def base_hex(color: str) -> str:
    """The ``#rrggbb`` part of a color, converting ``rgba(...)`` back to hex."""
    if _HEX_COLOR.match(color):
        return color.lower()
    match = _RGBA_COLOR.match(color)
    if not match:
        raise ValueError(f"Unsupported color: {color!r}")
    r, g, b = (int(match.group(i)) for i in range(1, 4))
    return f"#{r:02x}{g:02x}{b:02x}"


def apply_opacity(color: str, opacity: float) -> str:
    """Hex color at full opacity, ``rgba(r,g,b,a)`` otherwise."""
    if not 0.0 < opacity <= 1.0:
        raise ValueError(f"opacity must be in (0, 1], got {opacity}")
    hex_color = base_hex(color)
    if opacity >= 1.0:
        return hex_color
    r, g, b = (int(hex_color[i:i + 2], 16) for i in (1, 3, 5))
    return f"rgba({r},{g},{b},{round(opacity, 2)})"
