"""
Example usage of Mobile Frame.

This example demonstrates:
- Framing a still image as a PNG screenshot
- Recording a video file inside the phone frame to MP4 and alpha WebM
- Listening to status updates and errors

Usage:
    python example.py page.png
    python example.py page.png demo.mp4
"""

import asyncio
import logging
import sys

from rich.logging import RichHandler

from mobile_frame import BackgroundStyle
from mobile_frame import CaptureMode
from mobile_frame import CaptureRequest
from mobile_frame import FFmpegVideoSource
from mobile_frame import OutputFormat
from mobile_frame import SessionController
from mobile_frame import StillImageSource


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])
    if len(sys.argv) < 2:
        print(__doc__)
        return

    controller = SessionController(
        sink=lambda artifact: print(f"Saved {artifact.save('recordings')}"),
        on_status=lambda status: print(f"Status: {status}"),
        on_error=lambda error: print(f"Error: {error.to_dict()}"),
    )

    # Frame a screenshot of an iPhone-sized page at 3x
    screenshot = CaptureRequest(
        StillImageSource(sys.argv[1]),
        width=390,
        height=844,
        device_pixel_ratio=3,
        mode=CaptureMode.SCREENSHOT,
    )
    session = await controller.start(screenshot)
    await session.wait()

    if len(sys.argv) < 3:
        return

    # Record five seconds of a video on a dark background
    recording = CaptureRequest(
        FFmpegVideoSource(sys.argv[2]),
        width=390,
        height=844,
        device_pixel_ratio=2,
        background=BackgroundStyle.solid("#101010"),
        outputs=frozenset({OutputFormat.MP4, OutputFormat.WEBM_ALPHA}),
    )
    await controller.start(recording)
    await asyncio.sleep(5)
    result = await controller.stop()
    if result:
        print(f"Recorded {result.frames_composited} frames into {len(result.artifacts)} files")


if __name__ == "__main__":
    asyncio.run(main())
