"""
Color sampling for the synthetic status bar.
"""

from __future__ import annotations

from PIL import Image

from mobile_frame.geometry import Rect

RGB = tuple[int, int, int]


def is_readable(frame: Image.Image | None) -> bool:
    """Return True if the frame has at least one pixel."""
    return frame is not None and frame.width > 0 and frame.height > 0


def sample_status_color(frame: Image.Image | None, crop: Rect) -> RGB | None:
    """
    Sample the color just under the status bar.

    Downsamples the single source pixel at the horizontal center and top
    edge of `crop` into a 1x1 probe.

    Returns:
        An (r, g, b) triple, or None if the frame has no readable pixels.
    """
    if not is_readable(frame):
        return None
    assert frame is not None

    x = min(max(int(crop.x + crop.width / 2), 0), frame.width - 1)
    y = min(max(int(crop.y), 0), frame.height - 1)

    probe = frame.resize((1, 1), Image.Resampling.BILINEAR, box=(x, y, x + 1, y + 1))
    if probe.mode != "RGB":
        probe = probe.convert("RGB")
    r, g, b = probe.getpixel((0, 0))
    return (r, g, b)
