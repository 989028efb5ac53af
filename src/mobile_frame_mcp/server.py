"""
Mobile Frame MCP Server.

This module provides an MCP server that exposes the device-frame recorder
as tools for LLM agents.

The server provides tools for:
- Starting a framed recording of a video file or stream
- Stopping the recording and saving MP4 / alpha WebM files
- Taking a framed PNG screenshot of an image
- Reporting recorder status

Usage:
    # With CLI arguments (recommended)
    mobile-frame-mcp --output-dir ./recordings --outputs mp4,webm-alpha

    # With environment variables (fallback)
    export MOBILE_FRAME_OUTPUT_DIR=./recordings
    export MOBILE_FRAME_BACKGROUND="#101010"
    mobile-frame-mcp

    # With FastMCP CLI (pass args after --)
    fastmcp run mobile_frame_mcp.server:mcp -- --fps 30 --no-notch
"""

from __future__ import annotations

import argparse
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from dataclasses import field
from logging import getLogger
from pathlib import Path
from typing import Annotated
from typing import Any

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.utilities.types import Image as MCPImage
from pydantic import Field
from rich.logging import RichHandler

from mobile_frame import Artifact
from mobile_frame import BackgroundStyle
from mobile_frame import CaptureMode
from mobile_frame import CaptureRequest
from mobile_frame import FFmpegVideoSource
from mobile_frame import FrameSource
from mobile_frame import OutputFormat
from mobile_frame import SessionController
from mobile_frame import StillImageSource
from mobile_frame.errors import CaptureError

load_dotenv()

logger = getLogger(__name__)

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tif", ".tiff"}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# CLI Argument Parser
# =============================================================================

# Global to store CLI args parsed at startup
_cli_args: argparse.Namespace | None = None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments for the recorder."""
    parser = argparse.ArgumentParser(
        description="Mobile Frame MCP Server - Record viewports inside a phone frame",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Save MP4 and alpha WebM recordings to ./recordings
  mobile-frame-mcp --output-dir ./recordings --outputs mp4,webm-alpha

  # Opaque background, no dynamic island
  mobile-frame-mcp --background "#101010" --no-notch

  # Using environment variables (fallback)
  export MOBILE_FRAME_OUTPUT_DIR=./recordings
  mobile-frame-mcp
""",
    )

    parser.add_argument(
        "--output-dir",
        help="Directory recordings and screenshots are saved to (default: recordings, env: MOBILE_FRAME_OUTPUT_DIR)",
        default=os.getenv("MOBILE_FRAME_OUTPUT_DIR", "recordings"),
    )
    parser.add_argument(
        "--fps",
        type=int,
        help="Draw and encode frame rate (default: 30, env: MOBILE_FRAME_FPS)",
        default=int(os.getenv("MOBILE_FRAME_FPS", "30")),
    )
    parser.add_argument(
        "--outputs",
        help="Comma-separated output formats: mp4, webm-alpha (default: mp4, env: MOBILE_FRAME_OUTPUTS)",
        default=os.getenv("MOBILE_FRAME_OUTPUTS", "mp4"),
    )
    parser.add_argument(
        "--no-frame",
        dest="show_frame",
        action="store_false",
        help="Do not draw the device bezel (env: MOBILE_FRAME_SHOW_FRAME=0)",
        default=_env_flag("MOBILE_FRAME_SHOW_FRAME", True),
    )
    parser.add_argument(
        "--no-notch",
        dest="show_notch",
        action="store_false",
        help="Do not draw the dynamic island (env: MOBILE_FRAME_SHOW_NOTCH=0)",
        default=_env_flag("MOBILE_FRAME_SHOW_NOTCH", True),
    )
    parser.add_argument(
        "--background",
        help="transparent, transparent-force or a color (default: transparent, env: MOBILE_FRAME_BACKGROUND)",
        default=os.getenv("MOBILE_FRAME_BACKGROUND", "transparent"),
    )
    parser.add_argument(
        "--settle-delay",
        type=float,
        help="Seconds to wait before a screenshot is taken (default: 0.5, env: MOBILE_FRAME_SETTLE_DELAY)",
        default=float(os.getenv("MOBILE_FRAME_SETTLE_DELAY", "0.5")),
    )
    parser.add_argument(
        "--acquire-timeout",
        type=float,
        help="Seconds to wait for a source's first frame (default: 10, env: MOBILE_FRAME_ACQUIRE_TIMEOUT)",
        default=float(os.getenv("MOBILE_FRAME_ACQUIRE_TIMEOUT", "10")),
    )
    parser.add_argument(
        "--ffmpeg",
        help="ffmpeg binary (default: ffmpeg, env: MOBILE_FRAME_FFMPEG)",
        default=os.getenv("MOBILE_FRAME_FFMPEG", "ffmpeg"),
    )

    return parser.parse_args(argv)


def parse_outputs(value: str | list[str] | None) -> frozenset[OutputFormat]:
    """Parse "mp4,webm-alpha" (or a list of names) into output formats."""
    if value is None:
        return frozenset()
    names = value.split(",") if isinstance(value, str) else value
    return frozenset(OutputFormat(name.strip()) for name in names if name.strip())


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class RecorderConfig:
    """Recorder configuration."""

    output_dir: str = "recordings"
    fps: int = 30
    outputs: frozenset[OutputFormat] = field(default_factory=lambda: frozenset({OutputFormat.MP4}))
    show_frame: bool = True
    show_notch: bool = True
    background: BackgroundStyle = field(default_factory=BackgroundStyle.transparent)
    settle_delay: float = 0.5
    acquire_timeout: float = 10.0
    ffmpeg: str = "ffmpeg"

    @classmethod
    def from_args(cls, args: argparse.Namespace | None = None) -> RecorderConfig:
        """Create config from CLI arguments (with env var fallbacks)."""
        args = args or _cli_args or parse_args([])
        if args.fps <= 0:
            raise ValueError(f"fps must be positive, got {args.fps}")
        return cls(
            output_dir=args.output_dir,
            fps=args.fps,
            outputs=parse_outputs(args.outputs),
            show_frame=args.show_frame,
            show_notch=args.show_notch,
            background=BackgroundStyle.parse(args.background),
            settle_delay=args.settle_delay,
            acquire_timeout=args.acquire_timeout,
            ffmpeg=args.ffmpeg,
        )


# =============================================================================
# Recorder State
# =============================================================================

# Global recorder
_config: RecorderConfig | None = None
_controller: SessionController | None = None
_saved_paths: list[str] = []


def _save_artifact(artifact: Artifact) -> None:
    assert _config is not None
    path = artifact.save(_config.output_dir)
    _saved_paths.append(str(path))


def _log_status(status: str) -> None:
    logger.info(f"Recorder status: {status}")


def configure(config: RecorderConfig | None = None, **controller_kwargs: Any) -> SessionController:
    """
    (Re)create the global recorder.

    Args:
        config: Recorder configuration; read from CLI args / env when None.
        **controller_kwargs: Extra SessionController arguments (e.g. a
                             codec selector or pipe factory).
    """
    global _config, _controller
    _config = config or RecorderConfig.from_args()
    _controller = SessionController(
        fps=_config.fps,
        settle_delay=_config.settle_delay,
        acquire_timeout=_config.acquire_timeout,
        ffmpeg=_config.ffmpeg,
        sink=_save_artifact,
        on_status=_log_status,
        **controller_kwargs,
    )
    _saved_paths.clear()
    return _controller


def get_controller() -> SessionController:
    """Get the recorder, creating it from CLI args / env on first use."""
    if _controller is None:
        return configure()
    return _controller


def open_source(source: str, fps: int = 30, ffmpeg: str = "ffmpeg") -> FrameSource:
    """Pick a source adapter: still images by file suffix, everything else through ffmpeg."""
    if Path(source).suffix.lower() in IMAGE_SUFFIXES:
        return StillImageSource(source)
    return FFmpegVideoSource(source, fps=fps, ffmpeg=ffmpeg)


def _build_request(
    source: str,
    width: int,
    height: int,
    device_pixel_ratio: float,
    mode: CaptureMode,
    outputs: str | list[str] | None,
    show_frame: bool | None,
    show_notch: bool | None,
    background: str | None,
) -> CaptureRequest:
    controller = get_controller()
    assert _config is not None
    return CaptureRequest(
        source=open_source(source, fps=controller.fps, ffmpeg=_config.ffmpeg),
        width=width,
        height=height,
        device_pixel_ratio=device_pixel_ratio,
        show_frame=_config.show_frame if show_frame is None else show_frame,
        show_notch=_config.show_notch if show_notch is None else show_notch,
        background=_config.background if background is None else BackgroundStyle.parse(background),
        outputs=_config.outputs if outputs is None else parse_outputs(outputs),
        mode=mode,
    )


# =============================================================================
# Core Functions (usable without MCP)
# =============================================================================


async def start_recording(
    source: str,
    width: int,
    height: int,
    device_pixel_ratio: float = 1.0,
    outputs: str | list[str] | None = None,
    show_frame: bool | None = None,
    show_notch: bool | None = None,
    background: str | None = None,
) -> dict[str, Any]:
    """
    Start recording a source inside the device frame.

    Any recording already running is discarded first.

    Args:
        source: Video file path or stream URL (or an image path).
        width: Logical viewport width.
        height: Logical viewport height.
        device_pixel_ratio: Physical pixels per logical pixel.
        outputs: Output formats ("mp4", "webm-alpha"); config default when None.
        show_frame: Draw the bezel; config default when None.
        show_notch: Draw the dynamic island; config default when None.
        background: "transparent", "transparent-force" or a color; config default when None.

    Returns:
        Session id, state and any errors reported while starting.
    """
    request = _build_request(
        source, width, height, device_pixel_ratio, CaptureMode.RECORDING, outputs, show_frame, show_notch, background
    )
    controller = get_controller()
    session = await controller.start(request)
    return {
        "action": "start_recording",
        "session_id": session.id,
        "recording": controller.is_recording,
        "state": controller.state.value,
        "status": controller.status,
        "canvas": f"{session.layout.canvas_width}x{session.layout.canvas_height}",
        "errors": [e.to_dict() for e in session.errors],
    }


async def stop_recording() -> dict[str, Any]:
    """
    Stop the recording and save every finished output.

    Returns:
        Saved file paths and any errors; a no-op when nothing is recording.
    """
    controller = get_controller()
    result = await controller.stop()
    if result is None:
        return {"action": "stop_recording", "recording": False, "saved_paths": [], "errors": []}

    assert _config is not None
    saved = [str(Path(_config.output_dir) / a.filename) for a in result.artifacts]
    return {
        "action": "stop_recording",
        "session_id": result.session_id,
        "recording": False,
        "frames": result.frames_composited,
        "duration_seconds": round(result.duration_seconds, 2),
        "saved_paths": saved,
        "errors": [e.to_dict() for e in result.errors],
    }


async def screenshot(
    image_path: str,
    width: int,
    height: int,
    device_pixel_ratio: float = 1.0,
    show_frame: bool | None = None,
    show_notch: bool | None = None,
) -> Artifact:
    """
    Frame a still image and save it as a PNG.

    Args:
        image_path: Image to place on the device screen.
        width: Logical viewport width.
        height: Logical viewport height.
        device_pixel_ratio: Physical pixels per logical pixel.
        show_frame: Draw the bezel; config default when None.
        show_notch: Draw the dynamic island; config default when None.

    Returns:
        The PNG artifact.

    Raises:
        RuntimeError: If a recording is in progress.
        CaptureError: If the screenshot could not be produced.
    """
    controller = get_controller()
    if controller.is_recording:
        raise RuntimeError("A recording is in progress. Stop it before taking a screenshot.")

    request = _build_request(
        image_path, width, height, device_pixel_ratio, CaptureMode.SCREENSHOT, None, show_frame, show_notch, None
    )
    session = await controller.start(request)
    result = await session.wait()
    if not result.artifacts:
        if result.errors:
            raise result.errors[0]
        raise CaptureError("Screenshot produced no image")
    return result.artifacts[0]


async def status() -> dict[str, Any]:
    """
    Get the current recorder status.

    Returns:
        Recording flag, state, session id, frame count and last saved files.
    """
    controller = get_controller()
    session = controller.session
    last = controller.last_result
    return {
        "is_recording": controller.is_recording,
        "state": controller.state.value,
        "status": controller.status,
        "session_id": session.id if session else None,
        "frames": session.frames_composited if session else None,
        "last_session_id": last.session_id if last else None,
        "last_artifacts": [a.filename for a in last.artifacts] if last else [],
        "saved_paths": list(_saved_paths),
    }


# =============================================================================
# MCP Server Setup
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastMCP) -> AsyncGenerator[None, None]:
    """Create the recorder on startup and finish any recording on shutdown."""
    controller = configure()
    try:
        yield
    finally:
        if controller.session is not None:
            await controller.stop()


# Create the MCP server with lifespan
mcp = FastMCP(
    name="Mobile Frame",
    instructions="""
    This MCP server records videos and screenshots inside a smartphone frame.

    - mobile_start_recording: Start recording a video file or stream URL
    - mobile_stop_recording: Stop and save the recording (MP4 and/or alpha WebM)
    - mobile_screenshot: Frame a still image as a PNG
    - mobile_status: Check recorder status

    Typical workflow:
    1. Start a recording with the viewport size of the captured page
    2. Stop the recording once the interaction is done
    3. Check the saved file paths in the stop result
    """,
    lifespan=lifespan,
)


# =============================================================================
# MCP Tool Wrappers (thin wrappers around core functions)
# =============================================================================


@mcp.tool(annotations={"title": "Start Recording", "readOnlyHint": False})
async def mobile_start_recording(
    source: Annotated[str, "Video file path or stream URL to record"],
    width: Annotated[int, Field(description="Logical viewport width", gt=0)],
    height: Annotated[int, Field(description="Logical viewport height", gt=0)],
    device_pixel_ratio: Annotated[float, Field(description="Device pixel ratio", gt=0)] = 1.0,
    outputs: Annotated[list[str] | None, "Output formats: 'mp4', 'webm-alpha'"] = None,
    show_frame: Annotated[bool | None, "Draw the device bezel"] = None,
    show_notch: Annotated[bool | None, "Draw the dynamic island"] = None,
    background: Annotated[str | None, "'transparent', 'transparent-force' or a color like '#101010'"] = None,
) -> dict[str, Any]:
    """Start recording a source inside the phone frame."""
    return await start_recording(
        source, width, height, device_pixel_ratio, outputs, show_frame, show_notch, background
    )


@mcp.tool(annotations={"title": "Stop Recording", "readOnlyHint": False})
async def mobile_stop_recording() -> dict[str, Any]:
    """Stop recording and save the finished files."""
    return await stop_recording()


@mcp.tool(annotations={"title": "Take Screenshot", "readOnlyHint": False})
async def mobile_screenshot(
    image_path: Annotated[str, "Image to place on the device screen"],
    width: Annotated[int, Field(description="Logical viewport width", gt=0)],
    height: Annotated[int, Field(description="Logical viewport height", gt=0)],
    device_pixel_ratio: Annotated[float, Field(description="Device pixel ratio", gt=0)] = 1.0,
    show_frame: Annotated[bool | None, "Draw the device bezel"] = None,
    show_notch: Annotated[bool | None, "Draw the dynamic island"] = None,
) -> MCPImage:
    """
    Frame a still image inside the phone and return it.

    The PNG is also saved to the output directory.
    """
    artifact = await screenshot(image_path, width, height, device_pixel_ratio, show_frame, show_notch)
    return MCPImage(data=artifact.data, format="png")


@mcp.tool(annotations={"title": "Get Status", "readOnlyHint": True})
async def mobile_status() -> dict[str, Any]:
    """Get the current recorder status."""
    return await status()


# =============================================================================
# Entry Points
# =============================================================================


def run_server() -> None:
    """Run the MCP server (entry point for CLI)."""
    global _cli_args
    _cli_args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])
    mcp.run()


if __name__ == "__main__":
    run_server()
