"""Mobile Frame MCP Server.

Exposes the device-frame recorder as MCP tools for LLM agents.

This module provides both:
1. An MCP server (`mcp`) for use with MCP-compatible LLM clients
2. Core async functions for direct use in Python code

MCP Server Usage:
    # Run via CLI
    mobile-frame-mcp

    # Or programmatically
    from mobile_frame_mcp import mcp
    mcp.run()

Direct Function Usage:
    import asyncio
    from mobile_frame_mcp import start_recording, stop_recording

    async def main():
        await start_recording("demo.mp4", 390, 844, device_pixel_ratio=3)
        await asyncio.sleep(5)
        print(await stop_recording())

    asyncio.run(main())
"""

from mobile_frame_mcp.server import RecorderConfig
from mobile_frame_mcp.server import configure
from mobile_frame_mcp.server import mcp
from mobile_frame_mcp.server import run_server
from mobile_frame_mcp.server import screenshot
from mobile_frame_mcp.server import start_recording
from mobile_frame_mcp.server import status
from mobile_frame_mcp.server import stop_recording

__all__ = [
    "mcp",
    "run_server",
    # Configuration
    "RecorderConfig",
    "configure",
    # Core functions
    "start_recording",
    "stop_recording",
    "screenshot",
    "status",
]
