"""
Errors - Failure kinds raised and reported by the capture pipeline.

Per-output errors (UnsupportedCodec, NoDataRecorded) leave the other
outputs of a session untouched. SourceAcquisitionFailed, CompositingFault
and EncoderFailed are session-fatal: the controller marks the session
errored and ends it.
"""

from __future__ import annotations

from typing import Any


class CaptureError(Exception):
    """Base exception for all capture pipeline errors."""

    error_code = "capture_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def output(self) -> str | None:
        """Return the output format this error belongs to, if any."""
        return self.details.get("output")

    @property
    def session_fatal(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details}


class SourceAcquisitionFailed(CaptureError):
    """Raised when the frame source cannot be opened or yields no readable frame."""

    error_code = "source_acquisition_failed"

    @property
    def session_fatal(self) -> bool:
        return True


class UnsupportedCodec(CaptureError):
    """Raised when no codec profile in the preference list is available."""

    error_code = "unsupported_codec"


class NoDataRecorded(CaptureError):
    """Raised when an encoder finalized without producing any chunk."""

    error_code = "no_data_recorded"


class EncoderFailed(CaptureError):
    """Raised when an encoder process dies or rejects its input."""

    error_code = "encoder_failed"

    @property
    def session_fatal(self) -> bool:
        return True


class CompositingFault(CaptureError):
    """Raised when a draw tick fails unexpectedly."""

    error_code = "compositing_fault"

    @property
    def session_fatal(self) -> bool:
        return True
