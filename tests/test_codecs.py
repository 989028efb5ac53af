"""Tests for codec profiles and selection."""

import threading

import pytest

from mobile_frame import codecs
from mobile_frame.codecs import H264_MP4
from mobile_frame.codecs import MPEG4_MP4
from mobile_frame.codecs import OPENH264_MP4
from mobile_frame.codecs import VP8_WEBM
from mobile_frame.codecs import VP9_WEBM
from mobile_frame.codecs import CodecSelector
from mobile_frame.codecs import parse_encoder_list
from mobile_frame.codecs import probe_encoders
from mobile_frame.errors import UnsupportedCodec
from mobile_frame.models import OutputFormat

ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 S..... = Subtitle
 .F.... = Frame-level multithreading
 ------
 V....D a64multi             Multicolor charset for Commodore 64 (codec a64_multi)
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC / MPEG-4 part 10 (codec h264)
 V....D libvpx-vp9           libvpx VP9 (codec vp9)
 A....D aac                  AAC (Advanced Audio Coding)
 S..... srt                  SubRip subtitle
"""


class TestParseEncoderList:
    """Tests for parse_encoder_list."""

    def test_keeps_video_encoders_only(self) -> None:
        """Test audio, subtitle and legend lines are ignored."""
        assert parse_encoder_list(ENCODERS_OUTPUT) == {"a64multi", "libx264", "libvpx-vp9"}

    def test_empty_output(self) -> None:
        """Test empty output yields no encoders."""
        assert parse_encoder_list("") == frozenset()


class TestProbeEncoders:
    """Tests for probe_encoders."""

    def test_missing_binary(self) -> None:
        """Test a missing ffmpeg binary yields no encoders."""
        assert probe_encoders("mobile-frame-no-such-ffmpeg") == frozenset()


class TestCodecProfile:
    """Tests for CodecProfile."""

    def test_mp4_command(self) -> None:
        """Test the H.264 command reads raw RGBA and writes fragmented MP4."""
        cmd = H264_MP4.ffmpeg_command(390, 844, 30)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-s") + 1] == "390x844"
        assert cmd[cmd.index("-r") + 1] == "30"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-f", cmd.index("-c:v")) + 1] == "mp4"
        assert "frag_keyframe+empty_moov+default_base_moof" in cmd
        assert cmd[-1] == "pipe:1"

    def test_webm_command_keeps_alpha(self) -> None:
        """Test the VP9 profile encodes with an alpha plane."""
        cmd = VP9_WEBM.ffmpeg_command(10, 20, 24, ffmpeg="/usr/bin/ffmpeg")
        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-pix_fmt", cmd.index("-c:v")) + 1] == "yuva420p"
        assert VP9_WEBM.supports_alpha
        assert VP8_WEBM.supports_alpha
        assert not H264_MP4.supports_alpha

    def test_input_is_rgba(self) -> None:
        """Test every profile reads rgba frames."""
        for profile in (H264_MP4, OPENH264_MP4, MPEG4_MP4, VP9_WEBM, VP8_WEBM):
            cmd = profile.ffmpeg_command(2, 2, 30)
            assert cmd[cmd.index("-pix_fmt") + 1] == "rgba"


class TestCodecSelector:
    """Tests for CodecSelector."""

    def test_prefers_first_available(self) -> None:
        """Test the head of the preference list wins."""
        selector = CodecSelector({"libx264", "mpeg4", "libvpx-vp9", "libvpx"})
        assert selector.select(OutputFormat.MP4) is H264_MP4
        assert selector.select(OutputFormat.WEBM_ALPHA) is VP9_WEBM

    def test_falls_back(self) -> None:
        """Test later candidates are used when earlier ones are missing."""
        selector = CodecSelector({"mpeg4", "libvpx"})
        assert selector.select(OutputFormat.MP4) is MPEG4_MP4
        assert selector.select(OutputFormat.WEBM_ALPHA) is VP8_WEBM

    def test_unsupported(self) -> None:
        """Test UnsupportedCodec lists every tried encoder."""
        selector = CodecSelector(set())
        with pytest.raises(UnsupportedCodec) as exc_info:
            selector.select(OutputFormat.WEBM_ALPHA)
        error = exc_info.value
        assert error.output == "webm-alpha"
        assert error.details["tried"] == ["libvpx-vp9", "libvpx"]
        assert error.details["component"] == "encoder"
        assert not error.session_fatal

    def test_custom_preferences(self) -> None:
        """Test preference lists can be overridden."""
        selector = CodecSelector({"libx264", "mpeg4"}, preferences={OutputFormat.MP4: (MPEG4_MP4, H264_MP4)})
        assert selector.select(OutputFormat.MP4) is MPEG4_MP4
        with pytest.raises(UnsupportedCodec):
            selector.select(OutputFormat.WEBM_ALPHA)

    def test_is_supported(self) -> None:
        """Test availability checks use the encoder name."""
        selector = CodecSelector({"libopenh264"})
        assert selector.is_supported(OPENH264_MP4)
        assert not selector.is_supported(H264_MP4)
        assert selector.available == {"libopenh264"}

    def test_alpha_output_skips_opaque_profiles(self) -> None:
        """Test an alpha output never falls back to a profile without an alpha plane."""
        selector = CodecSelector({"libx264"}, preferences={OutputFormat.WEBM_ALPHA: (H264_MP4, VP9_WEBM)})
        with pytest.raises(UnsupportedCodec):
            selector.select(OutputFormat.WEBM_ALPHA)

    @pytest.mark.asyncio
    async def test_encoder_listing_runs_off_the_event_loop(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the first ffmpeg encoder listing runs in a worker thread and is cached."""
        calls = []

        def fake_listing(ffmpeg: str) -> frozenset[str]:
            calls.append((ffmpeg, threading.current_thread() is threading.main_thread()))
            return frozenset({"libx264"})

        monkeypatch.setattr(codecs, "probe_encoders", fake_listing)
        selector = CodecSelector(ffmpeg="/opt/ffmpeg")
        assert await selector.probe() == {"libx264"}
        assert await selector.probe() == {"libx264"}
        assert calls == [("/opt/ffmpeg", False)]
        assert selector.select(OutputFormat.MP4) is H264_MP4
