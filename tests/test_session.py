"""Tests for the SessionController lifecycle."""

import asyncio
import io
import re
import time

import pytest
from fakes import FakeSource
from fakes import PipeRecorder
from fakes import SourceTracker
from fakes import split_image
from fakes import wait_until
from PIL import Image

from mobile_frame.codecs import CodecSelector
from mobile_frame.compositor import Compositor
from mobile_frame.errors import CaptureError
from mobile_frame.errors import CompositingFault
from mobile_frame.errors import EncoderFailed
from mobile_frame.errors import SourceAcquisitionFailed
from mobile_frame.errors import UnsupportedCodec
from mobile_frame.models import Artifact
from mobile_frame.models import CaptureMode
from mobile_frame.models import CaptureRequest
from mobile_frame.models import OutputFormat
from mobile_frame.session import SessionController
from mobile_frame.session import SessionState

RECORDING_NAME = re.compile(r"^mobile-recording-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.(mp4|webm)$")
SCREENSHOT_NAME = re.compile(r"^mobile-screenshot-\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}\.png$")
BOTH = frozenset({OutputFormat.MP4, OutputFormat.WEBM_ALPHA})


class Harness:
    """A controller wired to fake pipes, collecting everything it reports."""

    def __init__(self, available: set[str] | None = None, **pipe_kwargs: object) -> None:
        self.pipes = PipeRecorder(**pipe_kwargs)
        self.statuses: list[str] = []
        self.errors: list[CaptureError] = []
        self.delivered: list[Artifact] = []
        self.controller = SessionController(
            fps=30,
            settle_delay=0,
            acquire_timeout=0.2,
            selector=CodecSelector({"libx264", "libvpx-vp9"} if available is None else available),
            pipe_factory=self.pipes,
            sink=self.delivered.append,
            on_status=self.statuses.append,
            on_error=self.errors.append,
        )


def _image(width: int = 390, height: int = 844) -> Image.Image:
    return split_image(width, height, (0, 0, 255), (255, 0, 0))


def _request(source: FakeSource, **kwargs: object) -> CaptureRequest:
    return CaptureRequest(source, 390, 844, **kwargs)  # type: ignore[arg-type]


class TestRecording:
    """Tests for recording sessions."""

    @pytest.mark.asyncio
    async def test_two_outputs_at_3x(self) -> None:
        """Test a 1080x2340 @3x recording with both outputs yields two artifacts."""
        h = Harness()
        source = FakeSource(_image(1080, 2340))
        request = CaptureRequest(
            source, 1080, 2340, 3.0, show_frame=True, show_notch=True, outputs=BOTH, mode=CaptureMode.RECORDING
        )
        session = await h.controller.start(request)
        assert h.controller.state is SessionState.ACTIVE
        assert session.layout.size == (3360, 7140)

        await wait_until(
            lambda: session.frames_composited >= 5 and all(p.frames_received >= 1 for p in h.pipes.pipes),
            timeout=120,
        )
        result = await h.controller.stop()

        assert result is not None
        assert result.errors == []
        assert len(result.artifacts) == 2
        assert all(a.size_bytes > 0 for a in result.artifacts)
        assert all(RECORDING_NAME.match(a.filename) for a in result.artifacts)
        assert sorted(a.filename.rsplit(".", 1)[1] for a in result.artifacts) == ["mp4", "webm"]
        assert h.delivered == result.artifacts
        assert h.pipes.encoders == ["libx264", "libvpx-vp9"]
        assert all(p.command[p.command.index("-s") + 1] == "3360x7140" for p in h.pipes.pipes)
        assert h.controller.state is SessionState.IDLE
        assert source.closes == 1

    @pytest.mark.asyncio
    async def test_status_sequence(self) -> None:
        """Test the status strings of a normal recording."""
        h = Harness()
        await h.controller.start(_request(FakeSource(_image()), outputs=frozenset()))
        await h.controller.stop()
        assert h.statuses == ["Starting recording…", "Recording…", "Processing download…", "Idle"]
        assert h.controller.status == "Idle"

    @pytest.mark.asyncio
    async def test_unsupported_codec_only(self) -> None:
        """Test a session whose only output is unsupported still returns to idle."""
        h = Harness(available=set())
        session = await h.controller.start(_request(FakeSource(_image()), outputs={OutputFormat.WEBM_ALPHA}))
        result = await asyncio.wait_for(session.wait(), timeout=5)

        assert result.artifacts == []
        assert len(result.errors) == 1
        assert isinstance(result.errors[0], UnsupportedCodec)
        assert result.errors[0].details["session_id"] == session.id
        assert h.errors == result.errors
        assert h.pipes.pipes == []
        assert h.controller.state is SessionState.IDLE
        assert await h.controller.stop() is None

    @pytest.mark.asyncio
    async def test_unsupported_codec_partial(self) -> None:
        """Test an unsupported output does not block the supported one."""
        h = Harness(available={"libx264"})
        session = await h.controller.start(_request(FakeSource(_image()), outputs=BOTH))
        assert h.controller.state is SessionState.ACTIVE
        await wait_until(lambda: h.pipes.pipes[0].frames_received >= 1)
        result = await h.controller.stop()

        assert result is not None
        assert [a.output for a in result.artifacts] == [OutputFormat.MP4]
        assert [type(e) for e in result.errors] == [UnsupportedCodec]
        assert not result.errored
        assert session.finished

    @pytest.mark.asyncio
    async def test_zero_outputs(self) -> None:
        """Test a recording with no outputs becomes active, then idle, with no encoder."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image()), outputs=frozenset()))
        assert h.controller.state is SessionState.ACTIVE
        await wait_until(lambda: session.frames_composited >= 2)

        result = await h.controller.stop()
        assert result is not None
        assert result.artifacts == []
        assert result.errors == []
        assert h.pipes.pipes == []
        assert h.controller.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_slow_compositing_keeps_timeline(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test draw ticks slower than 1/fps do not shorten the encoded timeline."""
        compose = Compositor.compose

        def slow_compose(self: Compositor, frame: Image.Image | None) -> bool:
            time.sleep(0.1)
            return compose(self, frame)

        monkeypatch.setattr(Compositor, "compose", slow_compose)
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image()), outputs=BOTH))
        started = time.perf_counter()
        await asyncio.sleep(0.6)
        expected = (time.perf_counter() - started) * 30
        result = await h.controller.stop()

        assert result is not None
        assert result.errors == []
        assert all(p.frames_received >= expected * 0.8 for p in h.pipes.pipes)
        assert session.frames_composited < expected
        assert result.duration_seconds >= 0.6

    @pytest.mark.asyncio
    async def test_no_frames_after_stop(self) -> None:
        """Test frame production halts once the session has stopped."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image()), outputs=frozenset()))
        await wait_until(lambda: session.frames_composited >= 1)
        await h.controller.stop()
        frames = session.frames_composited
        await asyncio.sleep(0.1)
        assert session.frames_composited == frames
        assert session.surface.latest is None


class TestStop:
    """Tests for stop()."""

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self) -> None:
        """Test stopping with no session changes nothing."""
        h = Harness()
        assert await h.controller.stop() is None
        assert h.controller.state is SessionState.IDLE
        assert h.statuses == []
        assert h.errors == []
        assert h.delivered == []

    @pytest.mark.asyncio
    async def test_stop_twice(self) -> None:
        """Test a second stop after completion is a no-op."""
        h = Harness()
        await h.controller.start(_request(FakeSource(_image()), outputs=frozenset()))
        first = await h.controller.stop()
        assert first is not None
        assert await h.controller.stop() is None
        assert h.controller.last_result is first

    @pytest.mark.asyncio
    async def test_concurrent_stops_share_result(self) -> None:
        """Test overlapping stop calls wait for the same finalization."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image())))
        await wait_until(lambda: h.pipes.pipes[0].frames_received >= 1)
        first, second = await asyncio.gather(h.controller.stop(), h.controller.stop())
        assert first is second
        assert first is not None
        assert first.session_id == session.id
        assert len(first.artifacts) == 1
        assert len(h.delivered) == 1


class TestScreenshot:
    """Tests for screenshot sessions."""

    @pytest.mark.asyncio
    async def test_single_png(self) -> None:
        """Test a frameless screenshot composites once and yields one PNG."""
        h = Harness()
        source = FakeSource(_image())
        request = _request(source, show_frame=False, show_notch=False, mode=CaptureMode.SCREENSHOT, outputs=BOTH)
        session = await h.controller.start(request)
        assert session.finished

        result = await session.wait()
        assert result.mode is CaptureMode.SCREENSHOT
        assert result.frames_composited == 1
        assert h.pipes.pipes == []
        assert len(result.artifacts) == 1

        artifact = result.artifacts[0]
        assert SCREENSHOT_NAME.match(artifact.filename)
        assert artifact.mime_type == "image/png"
        image = Image.open(io.BytesIO(artifact.data))
        assert image.format == "PNG"
        assert image.size == (390, 844)
        assert h.delivered == [artifact]
        assert h.statuses == ["Taking screenshot…", "Screenshot taken", "Idle"]
        assert source.closes == 1
        assert h.controller.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_framed_screenshot_is_transparent_outside(self) -> None:
        """Test the framed screenshot keeps transparent corners."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image()), mode=CaptureMode.SCREENSHOT))
        result = await session.wait()
        image = Image.open(io.BytesIO(result.artifacts[0].data))
        assert image.size == (430, 884)
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0))[3] == 0

    @pytest.mark.asyncio
    async def test_screenshot_without_frame_data(self) -> None:
        """Test a source with no readable frame fails the screenshot."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(None), mode=CaptureMode.SCREENSHOT))
        result = await session.wait()
        assert result.artifacts == []
        assert isinstance(result.errors[0], SourceAcquisitionFailed)
        assert result.errored


class TestFailures:
    """Tests for session-fatal and encoder failures."""

    @pytest.mark.asyncio
    async def test_source_open_fails(self) -> None:
        """Test a source that cannot be opened ends the session."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image(), fail_open=True)))
        result = await session.wait()
        assert result.errored
        assert [type(e) for e in result.errors] == [SourceAcquisitionFailed]
        assert h.statuses == ["Starting recording…", "Error: Permission denied", "Idle"]
        assert h.controller.state is SessionState.IDLE
        assert h.pipes.pipes == []

    @pytest.mark.asyncio
    async def test_unexpected_open_error_is_wrapped(self) -> None:
        """Test arbitrary open errors become SourceAcquisitionFailed."""

        class BusySource(FakeSource):
            async def open(self) -> None:
                raise OSError("device busy")

        h = Harness()
        session = await h.controller.start(_request(BusySource(_image())))
        result = await session.wait()
        assert isinstance(result.errors[0], SourceAcquisitionFailed)
        assert "device busy" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_first_frame_timeout(self) -> None:
        """Test a source that never yields a frame times out."""
        h = Harness()
        source = FakeSource(None)
        session = await h.controller.start(_request(source))
        result = await session.wait()
        assert isinstance(result.errors[0], SourceAcquisitionFailed)
        assert "No readable frame" in result.errors[0].message
        assert source.closes == 1
        assert h.pipes.pipes == []

    @pytest.mark.asyncio
    async def test_draw_tick_fault_stops_session(self) -> None:
        """Test an exception in the draw loop becomes a CompositingFault."""
        h = Harness()
        session = await h.controller.start(_request(FakeSource(_image(), fail_after_reads=3)))
        result = await asyncio.wait_for(session.wait(), timeout=5)
        assert result.errored
        assert any(isinstance(e, CompositingFault) for e in result.errors)
        assert h.controller.state is SessionState.IDLE
        assert h.pipes.pipes[0].input_closed

    @pytest.mark.asyncio
    async def test_encoder_failure_stops_session(self) -> None:
        """Test an encoder failure is reported once and stops the session."""
        h = Harness(fail_on_write=True)
        session = await h.controller.start(_request(FakeSource(_image())))
        result = await asyncio.wait_for(session.wait(), timeout=5)
        assert result.errored
        assert [type(e) for e in result.errors] == [EncoderFailed]
        assert h.errors == result.errors
        assert result.artifacts == []
        assert h.controller.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_encoder_exception_stops_session(self) -> None:
        """Test any exception inside an encoder's data path stops the session as errored."""
        h = Harness(write_error=RuntimeError("encoder bug"))
        session = await h.controller.start(_request(FakeSource(_image())))
        result = await asyncio.wait_for(session.wait(), timeout=5)
        assert result.errored
        assert [type(e) for e in result.errors] == [EncoderFailed]
        assert "encoder bug" in result.errors[0].message
        assert h.controller.state is SessionState.IDLE
        assert h.statuses[-1] == "Idle"

    @pytest.mark.asyncio
    async def test_encoder_failure_at_stop_marks_errored(self) -> None:
        """Test an encoder failing during finalization marks the session errored."""
        h = Harness(available={"libx264"}, returncode=1)
        await h.controller.start(_request(FakeSource(_image())))
        await wait_until(lambda: h.pipes.pipes[0].frames_received >= 1)
        result = await h.controller.stop()
        assert result is not None
        assert result.errored
        assert [type(e) for e in result.errors] == [EncoderFailed]
        assert result.artifacts == []

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_session(self) -> None:
        """Test a failing status listener is logged, not propagated."""

        def broken(status: str) -> None:
            raise RuntimeError("listener bug")

        controller = SessionController(settle_delay=0, on_status=broken, selector=CodecSelector(set()))
        await controller.start(_request(FakeSource(_image()), outputs=frozenset()))
        result = await controller.stop()
        assert result is not None
        assert controller.state is SessionState.IDLE


class TestSupersede:
    """Tests for starting a session while another one exists."""

    @pytest.mark.asyncio
    async def test_new_start_releases_previous(self) -> None:
        """Test the previous source and encoders are released before the new source opens."""
        h = Harness()
        tracker = SourceTracker()
        first_source = FakeSource(_image(), tracker=tracker)
        second_source = FakeSource(_image(), tracker=tracker)

        first = await h.controller.start(_request(first_source))
        await wait_until(lambda: h.pipes.pipes[0].frames_received >= 1)
        second = await h.controller.start(_request(second_source))

        assert tracker.max_live == 1
        assert first_source.closes == 1
        assert h.pipes.pipes[0].killed
        first_result = await first.wait()
        assert first_result.discarded
        assert first_result.artifacts == []
        assert h.controller.session is second

        await wait_until(lambda: h.pipes.pipes[1].frames_received >= 1)
        result = await h.controller.stop()
        assert result is not None
        assert result.session_id == second.id
        assert len(result.artifacts) == 1
        assert tracker.live == 0

    @pytest.mark.asyncio
    async def test_concurrent_starts_are_serialized(self) -> None:
        """Test two overlapping starts leave only the later session running."""
        h = Harness()
        tracker = SourceTracker()
        first_source = FakeSource(_image(), tracker=tracker)
        second_source = FakeSource(_image(), tracker=tracker)

        first, second = await asyncio.gather(
            h.controller.start(_request(first_source, outputs=frozenset())),
            h.controller.start(_request(second_source, outputs=frozenset())),
        )
        assert tracker.max_live == 1
        assert first.finished
        assert h.controller.session is second
        await h.controller.stop()
        assert tracker.live == 0
