"""
Models - Request, output and artifact types shared across the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from enum import Enum
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import ImageColor

if TYPE_CHECKING:
    from mobile_frame.source import FrameSource

logger = getLogger(__name__)


class CaptureMode(str, Enum):
    """Whether a session records video or produces a single still."""

    RECORDING = "recording"
    SCREENSHOT = "screenshot"


class OutputFormat(str, Enum):
    """Requested output of a recording session."""

    MP4 = "mp4"
    WEBM_ALPHA = "webm-alpha"

    @property
    def extension(self) -> str:
        return "mp4" if self is OutputFormat.MP4 else "webm"

    @property
    def mime_type(self) -> str:
        return "video/mp4" if self is OutputFormat.MP4 else "video/webm"

    @property
    def requires_alpha(self) -> bool:
        return self is OutputFormat.WEBM_ALPHA


class BackgroundKind(str, Enum):
    TRANSPARENT = "transparent"
    TRANSPARENT_FORCE = "transparent-force"
    SOLID = "solid"


@dataclass(frozen=True)
class BackgroundStyle:
    """How the canvas is cleared before each frame is drawn."""

    kind: BackgroundKind = BackgroundKind.TRANSPARENT
    color: tuple[int, int, int, int] | None = None

    @classmethod
    def transparent(cls) -> BackgroundStyle:
        return cls(BackgroundKind.TRANSPARENT)

    @classmethod
    def transparent_force(cls) -> BackgroundStyle:
        return cls(BackgroundKind.TRANSPARENT_FORCE)

    @classmethod
    def solid(cls, color: str | tuple[int, int, int]) -> BackgroundStyle:
        """
        Create an opaque background.

        Args:
            color: Any color string PIL understands ("#101010", "white",
                   "rgb(0, 0, 0)") or an (r, g, b) tuple.

        Raises:
            ValueError: If the color string cannot be parsed.
        """
        rgb = ImageColor.getrgb(color) if isinstance(color, str) else color
        return cls(BackgroundKind.SOLID, (rgb[0], rgb[1], rgb[2], 255))

    @classmethod
    def parse(cls, value: str | None) -> BackgroundStyle:
        """Build a style from the "transparent" / "transparent-force" / color setting."""
        if not value or value == BackgroundKind.TRANSPARENT.value:
            return cls.transparent()
        if value == BackgroundKind.TRANSPARENT_FORCE.value:
            return cls.transparent_force()
        return cls.solid(value)


@dataclass(frozen=True)
class CaptureRequest:
    """Everything a session needs; immutable for the session's lifetime."""

    source: FrameSource
    width: int
    height: int
    device_pixel_ratio: float = 1.0
    show_notch: bool = True
    show_frame: bool = True
    background: BackgroundStyle = field(default_factory=BackgroundStyle.transparent)
    outputs: frozenset[OutputFormat] = frozenset({OutputFormat.MP4})
    mode: CaptureMode = CaptureMode.RECORDING

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Viewport dimensions must be positive, got {self.width}x{self.height}")
        # Browsers report 0 or nothing when the ratio is unknown
        if not self.device_pixel_ratio or self.device_pixel_ratio <= 0:
            object.__setattr__(self, "device_pixel_ratio", 1.0)
        object.__setattr__(self, "outputs", frozenset(OutputFormat(o) for o in self.outputs))
        object.__setattr__(self, "mode", CaptureMode(self.mode))


def _timestamp(when: datetime | None = None) -> str:
    """ISO 8601 UTC timestamp with colons replaced, truncated to seconds."""
    when = when or datetime.now(timezone.utc)
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def recording_filename(output: OutputFormat, when: datetime | None = None) -> str:
    return f"mobile-recording-{_timestamp(when)}.{output.extension}"


def screenshot_filename(when: datetime | None = None) -> str:
    return f"mobile-screenshot-{_timestamp(when)}.png"


@dataclass
class Artifact:
    """A finished binary output plus its suggested filename."""

    data: bytes
    filename: str
    mime_type: str
    output: OutputFormat | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def save(self, directory: str | Path) -> Path:
        """
        Write the artifact into `directory` under its suggested filename.

        Returns:
            The path written.
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / self.filename
        path.write_bytes(self.data)
        logger.info(f"Saved {self.filename} ({self.size_bytes} bytes) to {directory}")
        return path
