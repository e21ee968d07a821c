from __future__ import annotations


class FaceAuthError(Exception):
    """Base class for errors raised inside the face authentication core."""


class ResourceAcquisitionError(FaceAuthError):
    """Camera, model or enrollment backend could not be acquired."""


class OperationTimeout(FaceAuthError):
    """A model call or capture step exceeded its time bound."""

    def __init__(self, what: str, seconds: float):
        super().__init__(f"{what} timed out after {seconds:.1f}s")
        self.what = what
        self.seconds = float(seconds)


class BackendError(FaceAuthError):
    """An edge-function call failed (network, HTTP status or malformed body)."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = int(status)
