"""
Error taxonomy for the face gate.

Recoverable conditions derive from FaceGateError so callers (the booking flow,
the API layer) can turn them into a user-facing message. DimensionMismatchError
signals a wiring defect between embedding providers and is not a
FaceGateError: sessions and the API never absorb it.
"""


class FaceGateError(Exception):
    """Base class for recoverable face gate errors."""

    code = "FACEGATE_ERROR"


class DetectionError(FaceGateError):
    """The embedder could not process a frame (e.g. malformed image)."""

    code = "DETECTION_ERROR"


class EmptyCaptureError(FaceGateError):
    """Finalize was attempted on an enrollment with zero samples."""

    code = "EMPTY_CAPTURE"


class NoReferenceError(FaceGateError):
    """Verification was attempted without a usable reference set."""

    code = "NO_REFERENCE"


class ResourceUnavailableError(FaceGateError):
    """The frame source could not be opened or is owned by another session."""

    code = "RESOURCE_UNAVAILABLE"


class InvalidStateError(FaceGateError):
    """The requested operation is not legal in the session's current state."""

    code = "INVALID_STATE"


class DimensionMismatchError(ValueError):
    """Descriptors of different dimensions were paired."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Descriptor dimension mismatch: expected {expected}, got {actual}. "
            "Enrollment and verification must use the same embedding provider."
        )
