"""
Codec profiles and runtime codec selection.

Each output format has an ordered preference list of ffmpeg encoder
profiles. The first profile whose encoder the local ffmpeg build
provides is used.
"""

from __future__ import annotations

import asyncio
import functools
import subprocess
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from logging import getLogger

from mobile_frame.errors import UnsupportedCodec
from mobile_frame.models import OutputFormat

logger = getLogger(__name__)

# Fragmented MP4 so the muxer never needs to seek back in the stdout pipe
FRAGMENTED_MP4_FLAGS = ("-movflags", "frag_keyframe+empty_moov+default_base_moof")


@dataclass(frozen=True)
class CodecProfile:
    """A concrete encoder + container configuration."""

    name: str
    encoder: str
    container: str
    pix_fmt: str
    codec_args: tuple[str, ...] = ()
    container_args: tuple[str, ...] = ()

    @property
    def supports_alpha(self) -> bool:
        return self.pix_fmt.startswith("yuva")

    def ffmpeg_command(self, width: int, height: int, fps: int, ffmpeg: str = "ffmpeg") -> list[str]:
        """Build the ffmpeg command reading raw RGBA on stdin and muxing to stdout."""
        return [
            ffmpeg,
            "-y",
            "-hide_banner",
            "-f",
            "rawvideo",
            "-pix_fmt",
            "rgba",
            "-s",
            f"{width}x{height}",
            "-r",
            str(fps),
            "-i",
            "pipe:0",
            "-c:v",
            self.encoder,
            *self.codec_args,
            "-pix_fmt",
            self.pix_fmt,
            "-f",
            self.container,
            *self.container_args,
            "pipe:1",
        ]


H264_MP4 = CodecProfile(
    name="h264",
    encoder="libx264",
    container="mp4",
    pix_fmt="yuv420p",
    codec_args=("-preset", "veryfast", "-crf", "23"),
    container_args=FRAGMENTED_MP4_FLAGS,
)
OPENH264_MP4 = CodecProfile(
    name="openh264",
    encoder="libopenh264",
    container="mp4",
    pix_fmt="yuv420p",
    codec_args=("-b:v", "6M"),
    container_args=FRAGMENTED_MP4_FLAGS,
)
MPEG4_MP4 = CodecProfile(
    name="mpeg4",
    encoder="mpeg4",
    container="mp4",
    pix_fmt="yuv420p",
    codec_args=("-q:v", "3"),
    container_args=FRAGMENTED_MP4_FLAGS,
)
VP9_WEBM = CodecProfile(
    name="vp9",
    encoder="libvpx-vp9",
    container="webm",
    pix_fmt="yuva420p",
    codec_args=("-b:v", "0", "-crf", "32", "-deadline", "realtime", "-cpu-used", "8", "-auto-alt-ref", "0"),
)
VP8_WEBM = CodecProfile(
    name="vp8",
    encoder="libvpx",
    container="webm",
    pix_fmt="yuva420p",
    codec_args=("-b:v", "6M", "-deadline", "realtime", "-cpu-used", "8", "-auto-alt-ref", "0"),
)

PREFERENCES: dict[OutputFormat, tuple[CodecProfile, ...]] = {
    OutputFormat.MP4: (H264_MP4, OPENH264_MP4, MPEG4_MP4),
    OutputFormat.WEBM_ALPHA: (VP9_WEBM, VP8_WEBM),
}


@functools.lru_cache(maxsize=8)
def probe_encoders(ffmpeg: str = "ffmpeg") -> frozenset[str]:
    """
    List the video encoders compiled into the local ffmpeg.

    Returns:
        Encoder names, or an empty set if ffmpeg is missing or fails.
    """
    try:
        result = subprocess.run(
            [ffmpeg, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"ffmpeg -encoders failed: {e.stderr}")
        return frozenset()
    except FileNotFoundError:
        logger.error("ffmpeg not found. Please install ffmpeg.")
        return frozenset()
    return parse_encoder_list(result.stdout)


def parse_encoder_list(text: str) -> frozenset[str]:
    """Parse the table printed by `ffmpeg -encoders`, keeping video encoders."""
    names = set()
    in_table = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("------"):
            in_table = True
            continue
        if not in_table or not stripped:
            continue
        parts = stripped.split()
        if len(parts) >= 2 and parts[0].startswith("V"):
            names.add(parts[1])
    return frozenset(names)


class CodecSelector:
    """Picks the first available profile for each requested output."""

    def __init__(
        self,
        available: Iterable[str] | None = None,
        *,
        ffmpeg: str = "ffmpeg",
        preferences: Mapping[OutputFormat, tuple[CodecProfile, ...]] | None = None,
    ) -> None:
        """
        Initialize the selector.

        Args:
            available: Encoder names to treat as available. Probed from
                       ffmpeg on first use when None.
            ffmpeg: ffmpeg binary used for probing.
            preferences: Per-output preference lists (defaults to PREFERENCES).
        """
        self._available = frozenset(available) if available is not None else None
        self._ffmpeg = ffmpeg
        self._preferences = dict(preferences) if preferences is not None else PREFERENCES

    @property
    def available(self) -> frozenset[str]:
        if self._available is None:
            self._available = probe_encoders(self._ffmpeg)
        return self._available

    async def probe(self) -> frozenset[str]:
        """Probe ffmpeg in a worker thread so a first probe never blocks the event loop."""
        if self._available is None:
            loop = asyncio.get_running_loop()
            self._available = await loop.run_in_executor(None, probe_encoders, self._ffmpeg)
        return self._available

    def is_supported(self, profile: CodecProfile) -> bool:
        return profile.encoder in self.available

    def select(self, output: OutputFormat) -> CodecProfile:
        """
        Return the preferred available profile for `output`.

        Raises:
            UnsupportedCodec: If no candidate encoder is available.
        """
        candidates = self._preferences.get(output, ())
        for index, profile in enumerate(candidates):
            if output.requires_alpha and not profile.supports_alpha:
                logger.debug(f"Skipping {profile.name} for {output.value}: no alpha plane")
                continue
            if self.is_supported(profile):
                if index > 0:
                    logger.warning(f"{candidates[0].name} not supported for {output.value}, using {profile.name}")
                return profile
        tried = [p.encoder for p in candidates]
        raise UnsupportedCodec(
            f"No supported codec for {output.value} (tried: {', '.join(tried) or 'none'})",
            details={"component": "encoder", "output": output.value, "tried": tried},
        )
