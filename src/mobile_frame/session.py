"""
Session - Lifecycle of one capture, from start request to teardown.

State machine:

    idle ──start──▶ starting ──first frame──▶ active ──stop──▶ stopping ──▶ idle
                       │                        │                 ▲
                       └──── fatal error ──▶ errored ─────────────┘

- A start request while a session exists first tears the old session
  down completely (draw task, encoders, source) and discards its output.
- Stopping halts frame production before asking the encoders to finalize,
  then waits for every encoder with no timeout.
- Draw ticks composite in a worker thread so the encoder feeds keep
  their cadence; stopping waits for a tick that is still in flight.
- Screenshot sessions wait a settle delay, composite exactly one frame,
  deliver a PNG and tear down; no encoder is involved.
- Errors are reported to listeners and collected in the SessionResult;
  they never escape the draw loop or the controller.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import time
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from logging import getLogger
from uuid import uuid4

from PIL import Image

from mobile_frame.codecs import CodecSelector
from mobile_frame.compositor import Compositor
from mobile_frame.compositor import Surface
from mobile_frame.encoder import Encoder
from mobile_frame.encoder import EncoderManager
from mobile_frame.encoder import PipeFactory
from mobile_frame.errors import CaptureError
from mobile_frame.errors import CompositingFault
from mobile_frame.errors import SourceAcquisitionFailed
from mobile_frame.geometry import Layout
from mobile_frame.geometry import compute_layout
from mobile_frame.models import Artifact
from mobile_frame.models import CaptureMode
from mobile_frame.models import CaptureRequest
from mobile_frame.models import screenshot_filename
from mobile_frame.sampler import is_readable

logger = getLogger(__name__)

STATUS_STARTING_RECORDING = "Starting recording…"
STATUS_TAKING_SCREENSHOT = "Taking screenshot…"
STATUS_RECORDING = "Recording…"
STATUS_PROCESSING = "Processing download…"
STATUS_SCREENSHOT_TAKEN = "Screenshot taken"
STATUS_IDLE = "Idle"

StatusListener = Callable[[str], None]
ErrorListener = Callable[[CaptureError], None]
ArtifactSink = Callable[[Artifact], None]


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    ERRORED = "errored"


@dataclass
class SessionResult:
    """What a finished session produced."""

    session_id: str
    mode: CaptureMode
    artifacts: list[Artifact] = field(default_factory=list)
    errors: list[CaptureError] = field(default_factory=list)
    frames_composited: int = 0
    duration_seconds: float = 0.0
    errored: bool = False
    discarded: bool = False


class Session:
    """Per-session state owned by the SessionController."""

    def __init__(self, request: CaptureRequest, layout: Layout, compositor: Compositor, surface: Surface) -> None:
        self.id = uuid4().hex[:8]
        self.request = request
        self.layout = layout
        self.compositor = compositor
        self.surface = surface
        self.encoders: EncoderManager | None = None
        self.draw_task: asyncio.Task[None] | None = None
        self.pending_tick: asyncio.Future[bool] | None = None
        self.stop_task: asyncio.Task[SessionResult] | None = None
        self.stop_requested = False
        self.errored = False
        self.artifacts: list[Artifact] = []
        self.errors: list[CaptureError] = []
        self.started_at = time.time()
        self._torn_down = False
        self._done: asyncio.Future[SessionResult] = asyncio.get_running_loop().create_future()

    @property
    def mode(self) -> CaptureMode:
        return self.request.mode

    @property
    def frames_composited(self) -> int:
        return self.compositor.frames_composited

    @property
    def duration_seconds(self) -> float:
        return time.time() - self.started_at

    @property
    def finished(self) -> bool:
        return self._done.done()

    async def wait(self) -> SessionResult:
        """Wait until the session has been torn down and return its result."""
        return await asyncio.shield(self._done)

    async def stop_drawing(self) -> None:
        """Cancel the draw loop and wait out a tick still running in a worker thread."""
        if self.draw_task:
            self.draw_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.draw_task
            self.draw_task = None
        tick = self.pending_tick
        if tick is not None:
            await asyncio.wait([tick])
            self.pending_tick = None
            if not tick.cancelled() and tick.exception() is not None:
                logger.debug(f"[{self.id}] Draw tick left running at stop failed: {tick.exception()}")

    def result(self, discarded: bool = False) -> SessionResult:
        return SessionResult(
            session_id=self.id,
            mode=self.mode,
            artifacts=list(self.artifacts),
            errors=list(self.errors),
            frames_composited=self.frames_composited,
            duration_seconds=self.duration_seconds,
            errored=self.errored,
            discarded=discarded,
        )


class SessionController:
    """
    Runs at most one capture session at a time.

    Example:
        >>> controller = SessionController(sink=lambda a: a.save("out"))
        >>> session = await controller.start(CaptureRequest(source, 390, 844, 3.0))
        >>> await asyncio.sleep(5)
        >>> result = await controller.stop()
    """

    def __init__(
        self,
        *,
        fps: int = 30,
        settle_delay: float = 0.5,
        acquire_timeout: float = 10.0,
        selector: CodecSelector | None = None,
        pipe_factory: PipeFactory | None = None,
        ffmpeg: str = "ffmpeg",
        sink: ArtifactSink | None = None,
        on_status: StatusListener | None = None,
        on_error: ErrorListener | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """
        Initialize the controller.

        Args:
            fps: Draw and encode cadence for recordings.
            settle_delay: Wait before the single screenshot tick.
            acquire_timeout: How long a recording waits for its first readable frame.
            selector: Codec selector (probes the local ffmpeg by default).
            pipe_factory: Encoder process factory (ffmpeg subprocess by default).
            ffmpeg: ffmpeg binary.
            sink: Receives every finished artifact.
            on_status: Receives human-readable lifecycle status strings.
            on_error: Receives every reported error.
            clock: Wall clock drawn in the status bar.
        """
        self._fps = fps
        self._settle_delay = settle_delay
        self._acquire_timeout = acquire_timeout
        self._selector = selector or CodecSelector(ffmpeg=ffmpeg)
        self._pipe_factory = pipe_factory
        self._ffmpeg = ffmpeg
        self._sink = sink
        self._on_status = on_status
        self._on_error = on_error
        self._clock = clock

        self._state = SessionState.IDLE
        self._status = STATUS_IDLE
        self._session: Session | None = None
        self._last_result: SessionResult | None = None
        self._start_lock = asyncio.Lock()

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_recording(self) -> bool:
        return self._session is not None and self._session.mode is CaptureMode.RECORDING

    @property
    def last_result(self) -> SessionResult | None:
        return self._last_result

    # --- public API ---------------------------------------------------------

    async def start(self, request: CaptureRequest) -> Session:
        """
        Start a new session, tearing down any existing one first.

        Concurrent calls are serialized; the later request supersedes the
        earlier one. Returns once the session is active (recording) or
        finished (screenshot, or a session that failed to start).
        """
        async with self._start_lock:
            if self._session is not None:
                await self._discard(self._session)

            layout = compute_layout(request.width, request.height, request.device_pixel_ratio, request.show_frame)
            surface = Surface(layout.canvas_width, layout.canvas_height)
            compositor = Compositor(
                layout,
                show_frame=request.show_frame,
                show_notch=request.show_notch,
                background=request.background,
                mode=request.mode,
                surface=surface,
                clock=self._clock,
            )
            session = Session(request, layout, compositor, surface)
            self._session = session
            self._state = SessionState.STARTING
            self._set_status(
                STATUS_TAKING_SCREENSHOT if request.mode is CaptureMode.SCREENSHOT else STATUS_STARTING_RECORDING
            )
            logger.info(
                f"[{session.id}] Starting {request.mode.value}: {request.width}x{request.height} "
                f"@ {request.device_pixel_ratio}x → {layout.canvas_width}x{layout.canvas_height}, "
                f"outputs={sorted(o.value for o in request.outputs)}"
            )

            try:
                await request.source.open()
            except CaptureError as e:
                await self._fail(session, e)
                return session
            except Exception as e:
                await self._fail(session, SourceAcquisitionFailed(f"Could not open source: {e}"))
                return session

            if request.mode is CaptureMode.SCREENSHOT:
                await self._run_screenshot(session)
            else:
                await self._run_recording(session)
            return session

    async def stop(self) -> SessionResult | None:
        """
        Stop the current session and wait for its result.

        Returns:
            The session result, or None if no session is running.
        """
        session = self._session
        if session is None:
            return None
        session.stop_requested = True
        if session.mode is CaptureMode.SCREENSHOT or self._state is SessionState.STARTING:
            return await session.wait()
        return await asyncio.shield(self._begin_stop(session))

    # --- recording ----------------------------------------------------------

    async def _run_recording(self, session: Session) -> None:
        source = session.request.source
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._acquire_timeout
        while not is_readable(source.read()):
            if session.stop_requested:
                await self._finish(session)
                return
            if loop.time() >= deadline:
                await self._fail(
                    session,
                    SourceAcquisitionFailed(
                        f"No readable frame within {self._acquire_timeout:.1f}s",
                        details={"component": "source"},
                    ),
                )
                return
            await asyncio.sleep(1.0 / self._fps)

        if not await self._draw_tick(session):
            return
        self._state = SessionState.ACTIVE
        session.draw_task = asyncio.create_task(self._draw_loop(session))

        outputs = session.request.outputs
        if outputs:
            session.encoders = EncoderManager(
                session.surface,
                fps=self._fps,
                selector=self._selector,
                pipe_factory=self._pipe_factory,
                ffmpeg=self._ffmpeg,
                session_id=session.id,
                on_error=lambda encoder, error: self._on_encoder_error(session, encoder, error),
            )
            for error in await session.encoders.start_all(outputs):
                self._report(session, error)
            if not session.encoders.encoders or session.errored:
                logger.warning(f"[{session.id}] Encoders failed to start, stopping")
                self._begin_stop(session)
                return

        if session.stop_requested:
            self._begin_stop(session)
            return
        self._set_status(STATUS_RECORDING)

    async def _draw_tick(self, session: Session) -> bool:
        """
        Composite one frame in a worker thread, keeping the loop free for the encoder feeds.

        Returns False after a fault has stopped the session.
        """
        loop = asyncio.get_running_loop()
        try:
            frame = session.request.source.read()
            session.pending_tick = loop.run_in_executor(None, session.compositor.compose, frame)
            # Shielded: a cancelled draw task leaves the tick for stop_drawing() to wait out
            await asyncio.shield(session.pending_tick)
        except Exception as e:
            session.pending_tick = None
            logger.exception(f"[{session.id}] Draw tick failed")
            self._report(session, CompositingFault(f"Draw tick failed: {e}", details={"component": "compositor"}))
            self._begin_stop(session)
            return False
        session.pending_tick = None
        return True

    async def _draw_loop(self, session: Session) -> None:
        interval = 1.0 / self._fps
        next_tick = time.perf_counter() + interval
        while True:
            delay = next_tick - time.perf_counter()
            if delay > 0:
                await asyncio.sleep(delay)
            else:
                # Fell behind; skip the missed ticks instead of bursting
                next_tick = time.perf_counter()
                await asyncio.sleep(0)
            next_tick += interval
            if not await self._draw_tick(session):
                return

    def _on_encoder_error(self, session: Session, encoder: Encoder, error: CaptureError) -> None:
        if session._torn_down:
            return
        self._report(session, error)
        self._begin_stop(session)

    def _begin_stop(self, session: Session) -> asyncio.Task[SessionResult]:
        if session.stop_task is None:
            session.stop_requested = True
            session.stop_task = asyncio.create_task(self._stop_recording(session))
        return session.stop_task

    async def _stop_recording(self, session: Session) -> SessionResult:
        self._state = SessionState.STOPPING
        self._set_status(STATUS_PROCESSING)
        logger.info(f"[{session.id}] Stopping after {session.frames_composited} frames")

        # No frame may be produced once stopping has begun
        await session.stop_drawing()

        if session.encoders:
            artifacts, errors = await session.encoders.stop_all()
            for error in errors:
                if error not in session.errors:
                    self._report(session, error)
            for artifact in artifacts:
                self._deliver(session, artifact)

        return await self._finish(session)

    # --- screenshot ---------------------------------------------------------

    async def _run_screenshot(self, session: Session) -> None:
        await asyncio.sleep(self._settle_delay)
        if session.stop_requested:
            await self._finish(session)
            return

        self._state = SessionState.ACTIVE
        loop = asyncio.get_running_loop()
        try:
            frame = session.request.source.read()
            image = await loop.run_in_executor(None, session.compositor.render, frame)
        except Exception as e:
            logger.exception(f"[{session.id}] Screenshot composition failed")
            await self._fail(session, CompositingFault(f"Draw tick failed: {e}", details={"component": "compositor"}))
            return

        if image is None:
            await self._fail(
                session,
                SourceAcquisitionFailed("Source has no readable frame", details={"component": "source"}),
            )
            return

        data = await loop.run_in_executor(None, _png_bytes, image)
        self._state = SessionState.STOPPING
        self._deliver(session, Artifact(data, screenshot_filename(), "image/png"))
        self._set_status(STATUS_SCREENSHOT_TAKEN)
        await self._finish(session)

    # --- teardown -----------------------------------------------------------

    async def _fail(self, session: Session, error: CaptureError) -> None:
        self._state = SessionState.ERRORED
        self._report(session, error)
        await self._finish(session)

    async def _discard(self, session: Session) -> None:
        """Forcefully tear down a session that is being superseded."""
        if session.stop_task is not None:
            # Already finalizing; its output is kept
            await session.stop_task
            return
        logger.warning(f"[{session.id}] Superseded by a new start request, discarding")
        session.stop_requested = True
        await session.stop_drawing()
        if session.encoders:
            await session.encoders.abort_all()
        session.artifacts.clear()
        await self._finish(session, discarded=True)

    async def _finish(self, session: Session, discarded: bool = False) -> SessionResult:
        """Release everything the session holds. Safe to call more than once."""
        if session._torn_down:
            return await session.wait()
        session._torn_down = True

        await session.stop_drawing()
        try:
            await session.request.source.close()
        except Exception:
            logger.exception(f"[{session.id}] Error releasing source")
        session.surface.close()

        result = session.result(discarded=discarded)
        if self._session is session:
            self._session = None
            self._state = SessionState.IDLE
            self._set_status(STATUS_IDLE)
        self._last_result = result
        session._done.set_result(result)
        logger.info(
            f"[{session.id}] Session ended: {len(result.artifacts)} artifacts, "
            f"{len(result.errors)} errors, {result.frames_composited} frames in {result.duration_seconds:.1f}s"
        )
        return result

    # --- reporting ----------------------------------------------------------

    def _set_status(self, status: str) -> None:
        self._status = status
        if self._on_status:
            try:
                self._on_status(status)
            except Exception:
                logger.exception("Status listener failed")

    def _report(self, session: Session, error: CaptureError) -> None:
        error.details.setdefault("session_id", session.id)
        session.errors.append(error)
        if error.session_fatal:
            session.errored = True
        component = error.details.get("component", "session")
        output = error.output or "-"
        logger.error(f"[{session.id}] {error.error_code} component={component} output={output}: {error.message}")
        self._set_status(f"Error: {error.message}")
        if self._on_error:
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Error listener failed")

    def _deliver(self, session: Session, artifact: Artifact) -> None:
        session.artifacts.append(artifact)
        if self._sink:
            try:
                self._sink(artifact)
            except Exception:
                logger.exception(f"[{session.id}] Delivering {artifact.filename} failed")
