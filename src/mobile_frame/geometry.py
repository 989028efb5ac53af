"""
Geometry - Maps logical viewport dimensions to the physical device layout.

Everything the compositor draws is positioned from a Layout computed once
per session. All Layout values are physical pixels (logical * dpr); the
canvas dimensions are additionally rounded up to even integers because
yuv420 encoders reject odd frame sizes.

Coordinate spaces:
    canvas  - origin at the top-left of the full output frame
    screen  - origin at the top-left of the screen rectangle
              (status bar, clock and glyph boxes live here)
"""

from __future__ import annotations

import math
from dataclasses import dataclass

BEZEL = 20
CORNER_RADIUS = 55
RIM_WIDTH = 3.5
STATUS_BAR_HEIGHT = 50
NOTCH_WIDTH_RATIO = 0.3
NOTCH_HEIGHT = 35
NOTCH_TOP = 12
LENS_RADIUS = 6
LENS_INSET = 12
HOME_INDICATOR_WIDTH_RATIO = 0.35
HOME_INDICATOR_BOTTOM = 8
CLOCK_X = 50
CLOCK_FONT_SIZE = 15
STATUS_RIGHT_MARGIN = 25
BUTTON_RADIUS = 2

# (x, y, width, height) in logical pixels; x is relative to the left edge,
# or to the right edge when the flag is set.
SIDE_BUTTONS = (
    (-2, 100, 6, 20, False),
    (-2, 140, 6, 45, False),
    (-2, 200, 6, 45, False),
    (-4, 160, 6, 70, True),
)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _even_ceil(value: float) -> int:
    """Round up to an integer, then up again to the next even integer."""
    return (math.ceil(value) + 1) & ~1


@dataclass(frozen=True)
class Rect:
    """An axis-aligned rectangle in floating point pixels."""

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    @property
    def box(self) -> tuple[float, float, float, float]:
        """Return (left, top, right, bottom) as used by PIL."""
        return (self.x, self.y, self.right, self.bottom)

    def zoomed(self, factor: float) -> Rect:
        """
        Shrink the rectangle by `factor`, keeping it horizontally centered
        and anchored at the top edge.
        """
        width = self.width * factor
        height = self.height * factor
        return Rect(self.x + (self.width - width) / 2, self.y, width, height)


@dataclass(frozen=True)
class Layout:
    """Complete physical-pixel layout of one device frame."""

    canvas_width: int
    canvas_height: int
    scale: float
    screen_aspect: float
    bezel: float
    corner_radius: float
    chassis_radius: float
    rim_width: float
    inner_radius: float
    screen: Rect
    status_bar_height: float
    notch: Rect
    lens_center: tuple[float, float]
    lens_radius: float
    home_indicator: Rect
    clock_anchor: tuple[float, float]
    clock_font_size: int
    signal: Rect
    wifi: Rect
    battery: Rect
    side_buttons: tuple[Rect, ...]
    button_radius: float

    @property
    def size(self) -> tuple[int, int]:
        return (self.canvas_width, self.canvas_height)

    @property
    def content(self) -> Rect:
        """Area below the status bar that receives the source frame (screen space)."""
        return Rect(0, self.status_bar_height, self.screen.width, self.screen.height - self.status_bar_height)


def compute_layout(
    width: int,
    height: int,
    device_pixel_ratio: float = 1.0,
    show_frame: bool = True,
) -> Layout:
    """
    Compute the device layout for a viewport.

    Args:
        width: Logical viewport width.
        height: Logical viewport height.
        device_pixel_ratio: Physical pixels per logical pixel.
        show_frame: Whether the bezel is drawn around the screen.

    Returns:
        Layout with every value in physical pixels.

    Raises:
        ValueError: If a dimension or the pixel ratio is not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Viewport dimensions must be positive, got {width}x{height}")
    if device_pixel_ratio <= 0:
        raise ValueError(f"Device pixel ratio must be positive, got {device_pixel_ratio}")

    s = float(device_pixel_ratio)
    bezel_logical = BEZEL if show_frame else 0

    canvas_width = _even_ceil((width + 2 * bezel_logical) * s)
    canvas_height = _even_ceil((height + 2 * bezel_logical) * s)

    bezel = bezel_logical * s
    corner_radius = (CORNER_RADIUS if show_frame else 0) * s
    rim_width = RIM_WIDTH * s if show_frame else 0.0
    inner_radius = corner_radius - (bezel - rim_width) if show_frame else 0.0

    # The even-rounding padding goes to the screen so nothing is left undrawn.
    screen = Rect(bezel, bezel, canvas_width - 2 * bezel, canvas_height - 2 * bezel)
    status_bar_height = STATUS_BAR_HEIGHT * s

    notch_width = screen.width * NOTCH_WIDTH_RATIO
    notch_height = NOTCH_HEIGHT * s
    notch = Rect((canvas_width - notch_width) / 2, bezel + NOTCH_TOP * s, notch_width, notch_height)

    home_width = _round_half_up(width * HOME_INDICATOR_WIDTH_RATIO) * s
    home_height = _round_half_up(5 * s / 3) * s
    home_indicator = Rect(
        (canvas_width - home_width) / 2,
        canvas_height - bezel - HOME_INDICATOR_BOTTOM * s,
        home_width,
        home_height,
    )

    baseline = status_bar_height * 0.65
    icon_top = baseline - 11 * s
    right = screen.width - STATUS_RIGHT_MARGIN * s

    side_buttons = tuple(
        Rect((canvas_width + x * s) if from_right else x * s, y * s, w * s, h * s)
        for x, y, w, h, from_right in SIDE_BUTTONS
    )

    return Layout(
        canvas_width=canvas_width,
        canvas_height=canvas_height,
        scale=s,
        screen_aspect=width / height,
        bezel=bezel,
        corner_radius=corner_radius,
        chassis_radius=corner_radius + bezel / 2,
        rim_width=rim_width,
        inner_radius=inner_radius,
        screen=screen,
        status_bar_height=status_bar_height,
        notch=notch,
        lens_center=(notch.right - LENS_INSET * s, notch.y + notch_height / 2),
        lens_radius=LENS_RADIUS * s,
        home_indicator=home_indicator,
        clock_anchor=(CLOCK_X * s, baseline),
        clock_font_size=max(1, round(CLOCK_FONT_SIZE * s)),
        signal=Rect(right - 80 * s, icon_top, 17 * s, 11 * s),
        wifi=Rect(right - 55 * s, icon_top - 2 * s, 16 * s, 16 * s),
        battery=Rect(right - 25 * s, icon_top, 22 * s, 11 * s),
        side_buttons=side_buttons,
        button_radius=BUTTON_RADIUS * s,
    )


def cover_crop(source_width: int, source_height: int, target_aspect: float) -> Rect:
    """
    Return the centered region of the source that matches `target_aspect`.

    The region is the largest one fully inside the source; scaling it to
    the target fills the target completely, discarding overflow.
    """
    source_aspect = source_width / source_height
    if source_aspect > target_aspect:
        crop_height = float(source_height)
        crop_width = crop_height * target_aspect
    else:
        crop_width = float(source_width)
        crop_height = crop_width / target_aspect
    return Rect(
        (source_width - crop_width) / 2,
        (source_height - crop_height) / 2,
        crop_width,
        crop_height,
    )
