"""
Mobile Frame - Record or screenshot a viewport inside a smartphone frame.

This library composites a live video source or a still image into a
synthetic phone bezel (status bar, clock, dynamic island, home indicator)
and encodes the result to MP4 and/or alpha-channel WebM with ffmpeg.
"""

from mobile_frame.codecs import CodecProfile
from mobile_frame.codecs import CodecSelector
from mobile_frame.compositor import Compositor
from mobile_frame.compositor import Surface
from mobile_frame.encoder import Encoder
from mobile_frame.encoder import EncoderManager
from mobile_frame.errors import CaptureError
from mobile_frame.errors import CompositingFault
from mobile_frame.errors import EncoderFailed
from mobile_frame.errors import NoDataRecorded
from mobile_frame.errors import SourceAcquisitionFailed
from mobile_frame.errors import UnsupportedCodec
from mobile_frame.geometry import Layout
from mobile_frame.geometry import compute_layout
from mobile_frame.models import Artifact
from mobile_frame.models import BackgroundStyle
from mobile_frame.models import CaptureMode
from mobile_frame.models import CaptureRequest
from mobile_frame.models import OutputFormat
from mobile_frame.session import Session
from mobile_frame.session import SessionController
from mobile_frame.session import SessionResult
from mobile_frame.session import SessionState
from mobile_frame.source import FFmpegVideoSource
from mobile_frame.source import FrameSource
from mobile_frame.source import StillImageSource

__version__ = "0.1.0"
__all__ = [
    "SessionController",
    "Session",
    "SessionResult",
    "SessionState",
    "CaptureRequest",
    "CaptureMode",
    "OutputFormat",
    "BackgroundStyle",
    "Artifact",
    "FrameSource",
    "StillImageSource",
    "FFmpegVideoSource",
    "Layout",
    "compute_layout",
    "Compositor",
    "Surface",
    "CodecProfile",
    "CodecSelector",
    "Encoder",
    "EncoderManager",
    "CaptureError",
    "SourceAcquisitionFailed",
    "UnsupportedCodec",
    "NoDataRecorded",
    "EncoderFailed",
    "CompositingFault",
]
