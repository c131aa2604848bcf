"""
Error types raised by the heart-rate detector.

Start-time failures (camera, torch, permission) and the end-of-session
insufficiency are :class:`HeartRateError` subclasses carrying an
:class:`ErrorKind`, so callers can react to the kind without matching
exception classes.  :class:`FrameReadError` is the per-tick error; the
session absorbs it and skips the frame.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    CAMERA_UNAVAILABLE = "camera_unavailable"
    ILLUMINATION_UNAVAILABLE = "illumination_unavailable"
    PERMISSION_DENIED = "permission_denied"
    MEASUREMENT_FAILED = "measurement_failed"

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    ErrorKind.CAMERA_UNAVAILABLE: "Camera is not available on this device.",
    ErrorKind.ILLUMINATION_UNAVAILABLE: "Flash/torch is not available on this device.",
    ErrorKind.PERMISSION_DENIED: "Camera permission is required. Please enable it in Settings.",
    ErrorKind.MEASUREMENT_FAILED: "Measurement failed. Please try again.",
}


class HeartRateError(Exception):
    """Base class for session-level, user-actionable failures."""

    kind: ErrorKind = ErrorKind.MEASUREMENT_FAILED

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.kind.message)


class CameraUnavailable(HeartRateError):
    kind = ErrorKind.CAMERA_UNAVAILABLE


class IlluminationUnavailable(HeartRateError):
    kind = ErrorKind.ILLUMINATION_UNAVAILABLE


class PermissionDenied(HeartRateError):
    kind = ErrorKind.PERMISSION_DENIED


class MeasurementFailed(HeartRateError):
    kind = ErrorKind.MEASUREMENT_FAILED


class FrameReadError(ValueError):
    """A frame could not be reduced to a sample.  Never fatal to a session."""
