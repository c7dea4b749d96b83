"""Error types raised by the capture pipeline."""
from __future__ import annotations


class MocapError(RuntimeError):
    """Base class for pipeline errors."""


class CaptureError(MocapError):
    """The capture source could not be opened."""


class PermissionDeniedError(CaptureError):
    """Access to the camera was refused."""


class DeviceUnavailableError(CaptureError):
    """No usable camera, or the video file cannot be decoded."""


class SolverFailure(MocapError):
    """A single frame failed landmark detection or rig solving."""


class ListenerBindError(MocapError):
    """The forwarding listener could not bind its port."""

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"Cannot listen on port {port}: {reason}")
        self.port = port
        self.reason = reason
