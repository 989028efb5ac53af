"""
Encoder - Live ffmpeg encoding of the composited surface.

Provides:
- FFmpegPipe: an ffmpeg subprocess fed raw RGBA on stdin
- Encoder: one output format, its chunk buffer and its state machine
- EncoderManager: the set of encoders attached to one session

Architecture:
                     Surface (latest composited frame)
                  ┌──────────┴──────────┐
                  ↓                     ↓
          SurfaceStream #1       SurfaceStream #2
                  ↓                     ↓
           _feed() @ fps          _feed() @ fps
                  ↓                     ↓
           ffmpeg stdin           ffmpeg stdin
                  ↓                     ↓
           ffmpeg stdout          ffmpeg stdout
                  ↓                     ↓
         _read_output()          _read_output()
                  ↓                     ↓
         chunks → .mp4           chunks → .webm

Each encoder owns its capture stream, process and tasks, so one encoder
failing or finishing never touches the others.

ffmpeg stamps input frames at a constant rate, so the feed writes exactly
one frame per elapsed 1/fps slot. When the loop stalls, the latest frame
is repeated for the missed slots and the video keeps wall-clock length.
"""

from __future__ import annotations

import asyncio
import contextlib
import subprocess
import time
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import IO
from typing import Protocol

from mobile_frame.codecs import CodecProfile
from mobile_frame.codecs import CodecSelector
from mobile_frame.compositor import Surface
from mobile_frame.compositor import SurfaceStream
from mobile_frame.errors import CaptureError
from mobile_frame.errors import EncoderFailed
from mobile_frame.errors import NoDataRecorded
from mobile_frame.models import Artifact
from mobile_frame.models import OutputFormat
from mobile_frame.models import recording_filename

logger = getLogger(__name__)

CHUNK_SIZE = 65536  # 64KB reads from ffmpeg stdout
STDERR_TAIL_LINES = 20


@dataclass
class VideoChunk:
    """A chunk of encoded video data."""

    data: bytes
    timestamp: float
    sequence: int

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class EncoderState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERRORED = "errored"


class EncoderPipe(Protocol):
    """The process side of an encoder: raw frames in, container bytes out."""

    def start(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def read(self) -> bytes: ...

    async def close_input(self) -> None: ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...

    @property
    def error_output(self) -> str: ...


PipeFactory = Callable[[list[str], int], EncoderPipe]


class FFmpegPipe:
    """
    An ffmpeg subprocess encoding raw RGBA frames from stdin.

    Blocking pipe I/O runs in the default executor so the event loop
    keeps compositing while ffmpeg works.
    """

    def __init__(self, command: list[str], frame_size: int) -> None:
        self._command = command
        self._frame_size = frame_size
        self._process: subprocess.Popen[bytes] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: list[str] = []

    @property
    def error_output(self) -> str:
        return "\n".join(self._stderr_tail)

    def start(self) -> None:
        """
        Launch ffmpeg.

        Raises:
            EncoderFailed: If the ffmpeg binary cannot be executed.
        """
        logger.debug(f"Starting ffmpeg: {' '.join(self._command)}")
        try:
            self._process = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=self._frame_size,
            )
        except OSError as e:
            raise EncoderFailed(f"Could not start ffmpeg: {e}", details={"component": "encoder"}) from e
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def write(self, data: bytes) -> None:
        if not self._process or not self._process.stdin:
            raise BrokenPipeError("ffmpeg stdin is closed")
        stdin = self._process.stdin
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: (stdin.write(data), stdin.flush()))

    async def read(self) -> bytes:
        """Return the next chunk of encoded output, or b"" at end of stream."""
        if not self._process or not self._process.stdout:
            return b""
        stdout = self._process.stdout
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, stdout.read1, CHUNK_SIZE)

    async def close_input(self) -> None:
        """Close stdin so ffmpeg flushes its buffers and exits."""
        if self._process and self._process.stdin:
            try:
                self._process.stdin.close()
            except (BrokenPipeError, OSError) as e:
                logger.debug(f"Error closing ffmpeg stdin: {e}")

    async def wait(self) -> int:
        if not self._process:
            return 0
        loop = asyncio.get_running_loop()
        returncode = await loop.run_in_executor(None, self._process.wait)
        if self._stderr_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None
        return returncode

    def kill(self) -> None:
        """Kill ffmpeg. Call wait() afterwards to reap the process."""
        if self._process and self._process.poll() is None:
            self._process.kill()
        if self._stderr_task:
            self._stderr_task.cancel()
            self._stderr_task = None

    async def _read_stderr(self) -> None:
        """Log ffmpeg stderr and keep its tail for error reports."""
        process = self._process
        if not process or not process.stderr:
            return
        stderr: IO[bytes] = process.stderr
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, stderr.readline)
            if not line:
                break
            decoded = line.decode("utf-8", errors="replace").strip()
            if decoded:
                logger.debug(f"ffmpeg: {decoded}")
                self._stderr_tail.append(decoded)
                del self._stderr_tail[:-STDERR_TAIL_LINES]


class Encoder:
    """
    Encodes one output format from its own capture stream.

    State machine:
        idle → recording → stopping → stopped
                   ↓           ↓
                errored     errored
    """

    def __init__(
        self,
        output: OutputFormat,
        profile: CodecProfile,
        stream: SurfaceStream,
        *,
        pipe_factory: PipeFactory | None = None,
        ffmpeg: str = "ffmpeg",
        on_error: Callable[[Encoder, CaptureError], None] | None = None,
        session_id: str = "",
    ) -> None:
        self._output = output
        self._profile = profile
        self._stream = stream
        self._pipe_factory: PipeFactory = pipe_factory or FFmpegPipe
        self._ffmpeg = ffmpeg
        self._on_error = on_error
        self._session_id = session_id

        self._state = EncoderState.IDLE
        self._pipe: EncoderPipe | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stop_feeding = False
        self._error: CaptureError | None = None

        self._chunks: list[VideoChunk] = []
        self._frames_written = 0

    @property
    def output(self) -> OutputFormat:
        return self._output

    @property
    def profile(self) -> CodecProfile:
        return self._profile

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def chunks(self) -> list[VideoChunk]:
        return list(self._chunks)

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def size_bytes(self) -> int:
        return sum(chunk.size_bytes for chunk in self._chunks)

    @property
    def error(self) -> CaptureError | None:
        return self._error

    def _details(self) -> dict[str, str]:
        return {"component": "encoder", "output": self._output.value, "session_id": self._session_id}

    async def start(self) -> None:
        """Start the encoder process and its feed and reader tasks."""
        if self._state is not EncoderState.IDLE:
            logger.warning(f"Encoder for {self._output.value} already started")
            return

        command = self._profile.ffmpeg_command(
            self._stream.width, self._stream.height, self._stream.fps, ffmpeg=self._ffmpeg
        )
        self._pipe = self._pipe_factory(command, self._stream.width * self._stream.height * 4)
        self._pipe.start()
        self._state = EncoderState.RECORDING

        self._reader_task = asyncio.create_task(self._read_output())
        self._feed_task = asyncio.create_task(self._feed())
        logger.info(
            f"Started {self._output.value} encoder ({self._profile.encoder}/{self._profile.container}) "
            f"{self._stream.width}x{self._stream.height} @ {self._stream.fps}fps"
        )

    async def stop(self) -> Artifact:
        """
        Finalize the recording.

        Stops feeding frames, lets ffmpeg flush, and drains every remaining
        chunk before returning. There is no timeout.

        Returns:
            The finished artifact.

        Raises:
            EncoderFailed: If the encoder errored or ffmpeg exited non-zero.
            NoDataRecorded: If no chunk was produced.
        """
        if self._state is EncoderState.RECORDING:
            self._state = EncoderState.STOPPING

        self._stop_feeding = True
        if self._feed_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._feed_task
            self._feed_task = None
        self._stream.close()

        returncode = 0
        if self._pipe:
            await self._pipe.close_input()
            if self._reader_task:
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
                self._reader_task = None
            returncode = await self._pipe.wait()

        if self._error is None and returncode != 0:
            tail = self._pipe.error_output if self._pipe else ""
            self._error = EncoderFailed(
                f"ffmpeg exited with code {returncode} for {self._output.value}: {tail}",
                details=self._details(),
            )

        if self._error is not None:
            self._state = EncoderState.ERRORED
            raise self._error

        self._state = EncoderState.STOPPED
        if not self._chunks:
            raise NoDataRecorded(f"No data recorded for {self._output.value}", details=self._details())

        artifact = Artifact(
            data=b"".join(chunk.data for chunk in self._chunks),
            filename=recording_filename(self._output),
            mime_type=self._output.mime_type,
            output=self._output,
        )
        logger.info(f"Finalized {self._output.value} recording: {artifact.size_bytes} bytes")
        return artifact

    async def abort(self) -> None:
        """Stop immediately and discard everything recorded."""
        self._stop_feeding = True
        for task in (self._feed_task, self._reader_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._feed_task = None
        self._reader_task = None
        self._stream.close()
        if self._pipe:
            self._pipe.kill()
            returncode = await self._pipe.wait()
            logger.debug(f"[{self._session_id}] {self._output.value} encoder killed (exit {returncode})")
        self._chunks.clear()
        if self._state is not EncoderState.ERRORED:
            self._state = EncoderState.STOPPED

    def _fail(self, error: CaptureError) -> None:
        if self._error is not None:
            return
        self._error = error
        was_recording = self._state is EncoderState.RECORDING
        self._state = EncoderState.ERRORED
        logger.error(f"[{self._session_id}] {self._output.value} encoder failed: {error.message}")
        if was_recording and self._on_error:
            self._on_error(self, error)

    async def _feed(self) -> None:
        """Write the latest surface frame to ffmpeg once per elapsed 1/fps slot."""
        assert self._pipe is not None
        fps = self._stream.fps
        started: float | None = None
        while not self._stop_feeding:
            data = self._stream.read()
            if data is None:
                await asyncio.sleep(1.0 / fps)
                continue

            now = time.perf_counter()
            if started is None:
                started = now
            due = int((now - started) * fps) + 1
            while self._frames_written < due and not self._stop_feeding:
                try:
                    await self._pipe.write(data)
                except Exception as e:
                    self._fail(EncoderFailed(f"ffmpeg rejected frame: {e}", details=self._details()))
                    return
                self._frames_written += 1

            next_slot = started + self._frames_written / fps
            await asyncio.sleep(max(0.0, next_slot - time.perf_counter()))

    async def _read_output(self) -> None:
        """Collect encoded chunks until ffmpeg closes stdout."""
        assert self._pipe is not None
        sequence = 0
        while True:
            try:
                data = await self._pipe.read()
            except Exception as e:
                self._fail(EncoderFailed(f"Error reading encoder output: {e}", details=self._details()))
                return
            if not data:
                break
            self._chunks.append(VideoChunk(data=data, timestamp=time.perf_counter(), sequence=sequence))
            sequence += 1

        if self._state is EncoderState.RECORDING:
            tail = self._pipe.error_output
            self._fail(EncoderFailed(f"ffmpeg exited unexpectedly: {tail}", details=self._details()))


class EncoderManager:
    """Starts, stops and collects the encoders of one session."""

    def __init__(
        self,
        surface: Surface,
        *,
        fps: int = 30,
        selector: CodecSelector | None = None,
        pipe_factory: PipeFactory | None = None,
        ffmpeg: str = "ffmpeg",
        session_id: str = "",
        on_error: Callable[[Encoder, CaptureError], None] | None = None,
    ) -> None:
        self._surface = surface
        self._fps = fps
        self._selector = selector or CodecSelector(ffmpeg=ffmpeg)
        self._pipe_factory = pipe_factory
        self._ffmpeg = ffmpeg
        self._session_id = session_id
        self._on_error = on_error
        self._encoders: list[Encoder] = []

    @property
    def encoders(self) -> list[Encoder]:
        return list(self._encoders)

    @property
    def active(self) -> bool:
        return any(e.state is EncoderState.RECORDING for e in self._encoders)

    async def start_encoder(self, output: OutputFormat) -> Encoder:
        """
        Select a profile for `output` and start an encoder on a new capture stream.

        Raises:
            UnsupportedCodec: If no profile for `output` is available.
            EncoderFailed: If ffmpeg cannot be launched.
        """
        await self._selector.probe()
        profile = self._selector.select(output)
        stream = self._surface.capture_stream(self._fps)
        encoder = Encoder(
            output,
            profile,
            stream,
            pipe_factory=self._pipe_factory,
            ffmpeg=self._ffmpeg,
            on_error=self._on_error,
            session_id=self._session_id,
        )
        try:
            await encoder.start()
        except CaptureError:
            stream.close()
            raise
        self._encoders.append(encoder)
        return encoder

    async def start_all(self, outputs: Iterable[OutputFormat]) -> list[CaptureError]:
        """Start one encoder per output; failures are returned, not raised."""
        errors: list[CaptureError] = []
        for output in sorted(outputs, key=lambda o: o.value):
            try:
                await self.start_encoder(output)
            except CaptureError as e:
                logger.error(f"[{self._session_id}] Could not start {output.value} encoder: {e.message}")
                e.details.setdefault("session_id", self._session_id)
                errors.append(e)
        return errors

    async def stop_all(self) -> tuple[list[Artifact], list[CaptureError]]:
        """Finalize every encoder concurrently and wait for all of them."""
        results = await asyncio.gather(*(e.stop() for e in self._encoders), return_exceptions=True)
        artifacts: list[Artifact] = []
        errors: list[CaptureError] = []
        for encoder, result in zip(self._encoders, results):
            if isinstance(result, Artifact):
                artifacts.append(result)
            elif isinstance(result, CaptureError):
                errors.append(result)
            elif isinstance(result, BaseException):
                logger.exception(f"Unexpected error stopping {encoder.output.value} encoder", exc_info=result)
                errors.append(EncoderFailed(str(result), details=encoder._details()))
        self._encoders.clear()
        return artifacts, errors

    async def abort_all(self) -> None:
        for encoder in self._encoders:
            await encoder.abort()
        self._encoders.clear()
