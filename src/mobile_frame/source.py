"""
Sources - Adapters that hand the pipeline ready-to-read frames.

A FrameSource is opened once per session, polled for its latest frame on
every draw tick, and closed on teardown. Sources never block the draw
tick: read() returns whatever frame is current, or None.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import subprocess
from logging import getLogger
from pathlib import Path
from typing import Protocol
from typing import runtime_checkable

from PIL import Image
from PIL import UnidentifiedImageError

from mobile_frame.errors import SourceAcquisitionFailed

logger = getLogger(__name__)


@runtime_checkable
class FrameSource(Protocol):
    """A video stream or still image the session composites from."""

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    def read(self) -> Image.Image | None: ...

    async def close(self) -> None: ...


class StillImageSource:
    """A single still image, from memory or from a file."""

    def __init__(self, image: Image.Image | str | Path) -> None:
        self._path: Path | None = None
        self._image: Image.Image | None = None
        self._loaded: Image.Image | None = None
        if isinstance(image, Image.Image):
            self._loaded = image
        else:
            self._path = Path(image)
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        """
        Load the image.

        Raises:
            SourceAcquisitionFailed: If the file is missing or not an image.
        """
        if self._path is not None:
            try:
                with Image.open(self._path) as img:
                    img.load()
                    self._loaded = img.copy()
            except (OSError, UnidentifiedImageError) as e:
                raise SourceAcquisitionFailed(
                    f"Could not load image {self._path}: {e}",
                    details={"component": "source"},
                ) from e
        self._image = self._loaded
        self._open = True

    def read(self) -> Image.Image | None:
        return self._image if self._open else None

    async def close(self) -> None:
        self._image = None
        self._open = False


class FFmpegVideoSource:
    """
    A video file or live stream URL decoded by ffmpeg.

    A background task reads raw RGBA frames from ffmpeg's stdout and keeps
    only the most recent one.
    """

    def __init__(
        self,
        url: str,
        *,
        fps: int = 30,
        size: tuple[int, int] | None = None,
        realtime: bool = True,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
    ) -> None:
        """
        Initialize the source.

        Args:
            url: File path or stream URL understood by ffmpeg.
            fps: Decode rate.
            size: Frame size; probed with ffprobe when None.
            realtime: Read input at its native rate (-re), as a live capture would.
            ffmpeg: ffmpeg binary.
            ffprobe: ffprobe binary.
        """
        self._url = url
        self._fps = fps
        self._size = size
        self._realtime = realtime
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe
        self._process: subprocess.Popen[bytes] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._latest: Image.Image | None = None
        self._frames_decoded = 0

    @property
    def is_open(self) -> bool:
        return self._process is not None

    @property
    def size(self) -> tuple[int, int] | None:
        return self._size

    @property
    def frames_decoded(self) -> int:
        return self._frames_decoded

    async def open(self) -> None:
        """
        Probe the stream and start decoding.

        Raises:
            SourceAcquisitionFailed: If the stream cannot be probed or decoded.
        """
        if self._size is None:
            loop = asyncio.get_running_loop()
            self._size = await loop.run_in_executor(None, self._probe_size)

        width, height = self._size
        cmd = [self._ffmpeg, "-hide_banner", "-loglevel", "error"]
        if self._realtime:
            cmd.append("-re")
        cmd += ["-i", self._url, "-an", "-f", "rawvideo", "-pix_fmt", "rgba", "-r", str(self._fps), "pipe:1"]

        logger.info(f"Decoding {self._url} at {width}x{height} @ {self._fps}fps")
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                bufsize=width * height * 4,
            )
        except OSError as e:
            raise SourceAcquisitionFailed(f"Could not start ffmpeg: {e}", details={"component": "source"}) from e
        self._reader_task = asyncio.create_task(self._read_frames())

    def read(self) -> Image.Image | None:
        return self._latest

    async def close(self) -> None:
        if self._process:
            if self._process.poll() is None:
                self._process.kill()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._process.wait)
            self._process = None
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        self._latest = None

    def _probe_size(self) -> tuple[int, int]:
        try:
            result = subprocess.run(
                [
                    self._ffprobe,
                    "-v",
                    "error",
                    "-select_streams",
                    "v:0",
                    "-show_entries",
                    "stream=width,height",
                    "-of",
                    "json",
                    self._url,
                ],
                capture_output=True,
                text=True,
                check=True,
            )
            stream = json.loads(result.stdout)["streams"][0]
            return int(stream["width"]), int(stream["height"])
        except subprocess.CalledProcessError as e:
            raise SourceAcquisitionFailed(
                f"ffprobe failed for {self._url}: {e.stderr.strip()}", details={"component": "source"}
            ) from e
        except FileNotFoundError as e:
            raise SourceAcquisitionFailed("ffprobe not found. Please install ffmpeg.") from e
        except (KeyError, IndexError, ValueError) as e:
            raise SourceAcquisitionFailed(
                f"No video stream in {self._url}", details={"component": "source"}
            ) from e

    async def _read_frames(self) -> None:
        """Keep the most recent decoded frame until ffmpeg ends."""
        assert self._size is not None
        width, height = self._size
        frame_size = width * height * 4
        loop = asyncio.get_running_loop()

        def _read_frame() -> bytes:
            if self._process and self._process.stdout:
                return self._process.stdout.read(frame_size)
            return b""

        while self._process:
            data = await loop.run_in_executor(None, _read_frame)
            if len(data) < frame_size:
                logger.info(f"Source {self._url} ended after {self._frames_decoded} frames")
                break
            self._latest = Image.frombytes("RGBA", (width, height), data)
            self._frames_decoded += 1
