"""
Compositor - Renders source frames inside a synthetic smartphone bezel.

Provides:
- Surface: the shared composited frame buffer (one writer, many readers)
- SurfaceStream: an independent read-only capture handle on a Surface
- Compositor: draws one output frame per tick

Drawing order per tick (later layers cover earlier ones):
    1. background clear / fill
    2. side buttons, metal chassis, black rim        (show_frame)
    3. screen clip: status band, source content, clock, glyphs
    4. dynamic island                                 (show_notch)
    5. home indicator

Everything except step 3 depends only on the Layout. Steps 1 and 2 are
rendered once into a base canvas and steps 4 and 5 into an overlay, so a
tick only rebuilds the screen rectangle: base, screen content, overlay.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from logging import getLogger

from PIL import Image
from PIL import ImageChops
from PIL import ImageColor
from PIL import ImageDraw
from PIL import ImageFont

from mobile_frame.geometry import Layout
from mobile_frame.geometry import Rect
from mobile_frame.geometry import cover_crop
from mobile_frame.models import BackgroundKind
from mobile_frame.models import BackgroundStyle
from mobile_frame.models import CaptureMode
from mobile_frame.sampler import RGB
from mobile_frame.sampler import is_readable
from mobile_frame.sampler import sample_status_color

logger = getLogger(__name__)

METAL_GRADIENT = (
    (0.0, "#8E8E93"),
    (0.05, "#E5E5EA"),
    (0.2, "#D1D1D6"),
    (0.8, "#D1D1D6"),
    (0.95, "#E5E5EA"),
    (1.0, "#8E8E93"),
)
BUTTON_COLOR = (0xD1, 0xD1, 0xD6, 255)
RIM_COLOR = (0, 0, 0, 255)
NOTCH_COLOR = (0, 0, 0, 255)
LENS_COLOR = (0x1A, 0x1A, 0x1A, 255)
HOME_INDICATOR_COLOR = (255, 255, 255, 204)
GLYPH_COLOR = (255, 255, 255, 255)

# Source zoom that trims the capture's outermost edge pixels
CONTENT_ZOOM = 0.99
WIFI_STROKE = 3
BATTERY_STROKE = 2
BATTERY_INSET = 2
SIGNAL_BAR_RADIUS = 1

FONT_CANDIDATES = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "Arial.ttf", "Helvetica.ttc")


class SurfaceStream:
    """A read-only capture handle on a Surface, owned by a single consumer."""

    def __init__(self, surface: Surface, fps: int) -> None:
        self._surface = surface
        self._fps = fps
        self._closed = False

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def width(self) -> int:
        return self._surface.width

    @property
    def height(self) -> int:
        return self._surface.height

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self) -> bytes | None:
        """Return the latest composited RGBA frame, or None if none exists or closed."""
        if self._closed:
            return None
        return self._surface.latest

    def close(self) -> None:
        self._closed = True


class Surface:
    """
    The composited frame buffer shared by the compositor and the encoders.

    Frames are published as immutable RGBA bytes, so readers can never
    mutate what the compositor wrote.
    """

    def __init__(self, width: int, height: int) -> None:
        self._width = width
        self._height = height
        self._frame: bytes | None = None
        self._sequence = 0
        self._streams: list[SurfaceStream] = []

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def frame_size(self) -> int:
        return self._width * self._height * 4

    @property
    def sequence(self) -> int:
        """Number of frames published so far."""
        return self._sequence

    @property
    def latest(self) -> bytes | None:
        return self._frame

    def publish(self, data: bytes) -> int:
        if len(data) != self.frame_size:
            raise ValueError(f"Frame is {len(data)} bytes, expected {self.frame_size}")
        self._frame = data
        self._sequence += 1
        return self._sequence

    def capture_stream(self, fps: int) -> SurfaceStream:
        stream = SurfaceStream(self, fps)
        self._streams.append(stream)
        return stream

    def close(self) -> None:
        """Close every capture stream and drop the last frame."""
        for stream in self._streams:
            stream.close()
        self._streams.clear()
        self._frame = None


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    for name in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    logger.debug(f"No TrueType font found, using PIL default at {size}px")
    return ImageFont.load_default(size=size)


def _int_box(rect: Rect) -> tuple[int, int, int, int]:
    return (round(rect.x), round(rect.y), round(rect.right), round(rect.bottom))


def _rounded_rect(draw: ImageDraw.ImageDraw, rect: Rect, radius: float, **kwargs: object) -> None:
    """Draw a rounded rectangle, clamping the radius like a canvas arcTo path."""
    x0, y0, x1, y1 = _int_box(rect)
    if x1 <= x0 or y1 <= y0:
        return
    radius = max(0.0, min(radius, (x1 - x0) / 2, (y1 - y0) / 2))
    draw.rounded_rectangle((x0, y0, x1 - 1, y1 - 1), radius=int(radius), **kwargs)  # type: ignore[arg-type]


def _circle_box(cx: float, cy: float, r: float) -> tuple[float, float, float, float]:
    return (cx - r, cy - r, cx + r, cy + r)


def metal_gradient(width: int, height: int) -> Image.Image:
    """Return a horizontal brushed-metal gradient of the given size."""
    stops = [(pos, ImageColor.getrgb(color)) for pos, color in METAL_GRADIENT]
    row = Image.new("RGBA", (width, 1))
    pixels = row.load()
    assert pixels is not None
    span = max(width - 1, 1)
    for x in range(width):
        t = x / span
        for (p0, c0), (p1, c1) in zip(stops, stops[1:]):
            if p0 <= t <= p1:
                f = (t - p0) / (p1 - p0) if p1 > p0 else 0.0
                pixels[x, 0] = tuple(round(a + (b - a) * f) for a, b in zip(c0, c1)) + (255,)
                break
    return row.resize((width, height), Image.Resampling.NEAREST)


def draw_signal(draw: ImageDraw.ImageDraw, rect: Rect) -> None:
    """Four bars of increasing height, bottom-aligned in `rect`."""
    gap = rect.width * 0.2
    bar_width = (rect.width - 3 * gap) / 4
    for i in range(4):
        bar_height = rect.height * (0.4 + 0.2 * i)
        bar = Rect(rect.x + i * (bar_width + gap), rect.bottom - bar_height, bar_width, bar_height)
        _rounded_rect(draw, bar, SIGNAL_BAR_RADIUS, fill=GLYPH_COLOR)


def draw_wifi(draw: ImageDraw.ImageDraw, rect: Rect) -> None:
    """Two concentric arcs and a dot, centered on the bottom of `rect`."""
    size = rect.width
    cx = rect.x + size / 2
    cy = rect.y + size
    for ratio in (0.9, 0.6):
        # PIL strokes inward from the bounding box; widen it to center the stroke on the radius
        r = size * ratio + WIFI_STROKE / 2
        draw.arc(_circle_box(cx, cy, r), start=225, end=315, fill=GLYPH_COLOR, width=WIFI_STROKE)
    draw.ellipse(_circle_box(cx, rect.y + size * 0.9, size * 0.15), fill=GLYPH_COLOR)


def draw_battery(draw: ImageDraw.ImageDraw, rect: Rect) -> None:
    """Rounded outline, full inner fill and a terminal nub on the right."""
    _rounded_rect(draw, rect, rect.height / 3, outline=GLYPH_COLOR, width=BATTERY_STROKE)
    inner = Rect(
        rect.x + BATTERY_INSET,
        rect.y + BATTERY_INSET,
        rect.width - 2 * BATTERY_INSET,
        rect.height - 2 * BATTERY_INSET,
    )
    _rounded_rect(draw, inner, rect.height / 4, fill=GLYPH_COLOR)
    nub_center = (rect.right + 2, rect.y + rect.height / 2)
    draw.pieslice(_circle_box(*nub_center, rect.height / 4), start=-90, end=90, fill=GLYPH_COLOR)


class Compositor:
    """
    Draws source frames into the device frame described by a Layout.

    Each tick rewrites the whole screen rectangle from the cached base, so
    nothing of an earlier frame survives; this is the `transparent-force`
    guarantee. Recordings resample with BILINEAR to keep ticks short,
    screenshots with BICUBIC.
    """

    def __init__(
        self,
        layout: Layout,
        *,
        show_frame: bool = True,
        show_notch: bool = True,
        background: BackgroundStyle | None = None,
        mode: CaptureMode = CaptureMode.RECORDING,
        surface: Surface | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the compositor and pre-render the static layers.

        Args:
            layout: Geometry computed by compute_layout().
            show_frame: Draw the bezel, buttons and rim.
            show_notch: Draw the dynamic island.
            background: How the canvas is cleared each tick.
            mode: Screenshot mode always clears to full transparency.
            surface: Where composited frames are published, if anywhere.
            clock: Wall-clock source for the status bar time.
        """
        self._layout = layout
        self._show_frame = show_frame
        self._show_notch = show_notch
        self._background = background or BackgroundStyle.transparent()
        self._mode = mode
        self._surface = surface
        self._clock = clock
        self._frames_composited = 0
        self._frames_skipped = 0

        self._screen_origin = (round(layout.screen.x), round(layout.screen.y))
        self._screen_size = (
            layout.canvas_width - 2 * self._screen_origin[0],
            layout.canvas_height - 2 * self._screen_origin[1],
        )
        self._screen_box = (*self._screen_origin, *(o + s for o, s in zip(self._screen_origin, self._screen_size)))
        self._status_bar_px = min(round(layout.status_bar_height), self._screen_size[1])
        self._font = _load_font(layout.clock_font_size)
        self._resample = Image.Resampling.BICUBIC if mode is CaptureMode.SCREENSHOT else Image.Resampling.BILINEAR

        self._screen_mask = self._render_screen_mask()
        base = self._render_base_layer()
        self._screen_base = base.crop(self._screen_box)
        self._screen_overlay = self._render_overlay_layer().crop(self._screen_box)
        self._canvas = base

    @property
    def layout(self) -> Layout:
        return self._layout

    @property
    def frames_composited(self) -> int:
        return self._frames_composited

    @property
    def frames_skipped(self) -> int:
        return self._frames_skipped

    @property
    def canvas(self) -> Image.Image:
        """The retained canvas. Read-only for callers; copy before modifying."""
        return self._canvas

    def compose(self, frame: Image.Image | None) -> bool:
        """
        Composite one tick and publish it to the surface.

        Args:
            frame: Latest source frame, or None if the source has none yet.

        Returns:
            True if a frame was drawn, False if the tick was skipped.
        """
        if not is_readable(frame):
            self._frames_skipped += 1
            return False
        assert frame is not None

        crop = cover_crop(frame.width, frame.height, self._layout.screen_aspect)
        color = sample_status_color(frame, crop)
        if color is None:
            self._frames_skipped += 1
            return False

        self._draw(frame, crop, color)
        self._frames_composited += 1

        if self._surface is not None:
            self._surface.publish(self._canvas.tobytes())
        return True

    def render(self, frame: Image.Image | None) -> Image.Image | None:
        """Composite one frame and return a copy of it, or None if skipped."""
        if not self.compose(frame):
            return None
        return self._canvas.copy()

    # --- per tick -----------------------------------------------------------

    def _draw(self, frame: Image.Image, crop: Rect, color: RGB) -> None:
        region = self._screen_base.copy()
        region.alpha_composite(self._render_screen(frame, crop, color))
        region.alpha_composite(self._screen_overlay)
        # paste replaces pixels, so no alpha from the previous tick is kept
        self._canvas.paste(region, self._screen_box[:2])

    def _render_screen(self, frame: Image.Image, crop: Rect, color: RGB) -> Image.Image:
        width, height = self._screen_size
        bar = self._status_bar_px
        screen = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        if bar > 0:
            screen.paste(color + (255,), (0, 0, width, bar))

        content_height = height - bar
        if content_height > 0:
            if frame.mode not in ("RGB", "RGBA"):
                frame = frame.convert("RGBA")
            content = frame.resize(
                (width, content_height),
                self._resample,
                box=crop.zoomed(CONTENT_ZOOM).box,
            )
            if content.mode != "RGBA":
                content = content.convert("RGBA")
            screen.paste(content, (0, bar))

        draw = ImageDraw.Draw(screen)
        time_text = self._clock().strftime("%H:%M")
        draw.text(self._layout.clock_anchor, time_text, fill=GLYPH_COLOR, font=self._font, anchor="ms")
        draw_signal(draw, self._layout.signal)
        draw_wifi(draw, self._layout.wifi)
        draw_battery(draw, self._layout.battery)

        screen.putalpha(ImageChops.multiply(screen.getchannel("A"), self._screen_mask))
        return screen

    # --- static layers ------------------------------------------------------

    def _render_base_layer(self) -> Image.Image:
        """Background fill (step 1) with the device chrome (step 2) on top."""
        background = self._background
        fill: tuple[int, ...] = (0, 0, 0, 0)
        if (
            self._mode is not CaptureMode.SCREENSHOT
            and background.kind is BackgroundKind.SOLID
            and background.color is not None
        ):
            fill = background.color
        base = Image.new("RGBA", self._layout.size, fill)
        if self._show_frame:
            base.alpha_composite(self._render_frame_layer())
        return base

    def _render_frame_layer(self) -> Image.Image:
        layout = self._layout
        layer = Image.new("RGBA", layout.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)

        for button in layout.side_buttons:
            _rounded_rect(draw, button, layout.button_radius, fill=BUTTON_COLOR)

        chassis = Rect(0, 0, layout.canvas_width, layout.canvas_height)
        mask = Image.new("L", layout.size, 0)
        _rounded_rect(ImageDraw.Draw(mask), chassis, layout.chassis_radius, fill=255)
        layer.paste(metal_gradient(*layout.size), (0, 0), mask)

        rim = layout.rim_width
        inner = Rect(rim, rim, layout.canvas_width - 2 * rim, layout.canvas_height - 2 * rim)
        _rounded_rect(draw, inner, layout.corner_radius, fill=RIM_COLOR)
        return layer

    def _render_screen_mask(self) -> Image.Image:
        mask = Image.new("L", self._screen_size, 0)
        full = Rect(0, 0, *self._screen_size)
        radius = self._layout.inner_radius if self._show_frame else 0
        _rounded_rect(ImageDraw.Draw(mask), full, radius, fill=255)
        return mask

    def _render_overlay_layer(self) -> Image.Image:
        layout = self._layout
        layer = Image.new("RGBA", layout.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)

        if self._show_notch:
            notch = layout.notch
            _rounded_rect(draw, notch, notch.height / 2, fill=NOTCH_COLOR)
            draw.ellipse(_circle_box(*layout.lens_center, layout.lens_radius), fill=LENS_COLOR)

        home = layout.home_indicator
        _rounded_rect(draw, home, home.height / 2, fill=HOME_INDICATOR_COLOR)
        return layer
