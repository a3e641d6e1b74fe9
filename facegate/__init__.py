"""
Passenger Face Gate

Face enrollment and verification for a multi-step booking flow: capture a
handful of face samples while the passenger holds the capture button, freeze
them into a ReferenceSet, and later confirm that the person at the gate
matches it.

Main components:
    - config: Configuration loading and management
    - descriptors: FaceDescriptor, Detection, CapturedSample, ReferenceSet
    - camera: Frame sources and the single-owner SharedCamera
    - embedder: Face detection + descriptor extraction (dlib / insightface)
    - matching: Minimum Euclidean distance matcher
    - capture: Enrollment capture session
    - verification: Verification session and verdicts
    - gate: FaceGate facade
    - reference_store: Persisted reference sets and verification log

Usage:
    from facegate import FaceGate, OpenCVFrameSource, get_embedder

    gate = FaceGate(OpenCVFrameSource(), get_embedder())
    enrollment = gate.begin_enrollment()
"""

from facegate.config import (
    get_config,
    get_section,
    get_capture_config,
    get_matching_config,
    get_verification_config,
    get_embedder_config,
    get_camera_config,
    get_storage_config,
    get_api_config,
    get_server_config,
)

from facegate.errors import (
    FaceGateError,
    DetectionError,
    EmptyCaptureError,
    NoReferenceError,
    ResourceUnavailableError,
    InvalidStateError,
    DimensionMismatchError,
)

from facegate.descriptors import (
    FaceDescriptor,
    Detection,
    CapturedSample,
    ReferenceSet,
    as_descriptor,
)

from facegate.camera import (
    CameraConfig,
    FrameSource,
    OpenCVFrameSource,
    LatestFrameSource,
    SharedCamera,
    CameraLease,
)

from facegate.embedder import (
    FaceEmbedder,
    ModelFaceEmbedder,
    StubFaceEmbedder,
    resolve_reference_set,
)

from facegate.matching import MatchResult, Matcher, EuclideanMatcher

from facegate.capture import (
    CaptureSession,
    CaptureState,
    CaptureMode,
    EmbedOnCapture,
    DeferEmbedding,
    make_strategy,
)

from facegate.verification import (
    VerificationSession,
    VerificationState,
    VerificationVerdict,
)

from facegate.gate import FaceGate, get_embedder

from facegate.reference_store import ReferenceStore, get_reference_store

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_capture_config",
    "get_matching_config",
    "get_verification_config",
    "get_embedder_config",
    "get_camera_config",
    "get_storage_config",
    "get_api_config",
    "get_server_config",
    # Errors
    "FaceGateError",
    "DetectionError",
    "EmptyCaptureError",
    "NoReferenceError",
    "ResourceUnavailableError",
    "InvalidStateError",
    "DimensionMismatchError",
    # Data model
    "FaceDescriptor",
    "Detection",
    "CapturedSample",
    "ReferenceSet",
    "as_descriptor",
    # Camera
    "CameraConfig",
    "FrameSource",
    "OpenCVFrameSource",
    "LatestFrameSource",
    "SharedCamera",
    "CameraLease",
    # Embedder
    "FaceEmbedder",
    "ModelFaceEmbedder",
    "StubFaceEmbedder",
    "resolve_reference_set",
    # Matching
    "MatchResult",
    "Matcher",
    "EuclideanMatcher",
    # Sessions
    "CaptureSession",
    "CaptureState",
    "CaptureMode",
    "EmbedOnCapture",
    "DeferEmbedding",
    "make_strategy",
    "VerificationSession",
    "VerificationState",
    "VerificationVerdict",
    # Facade
    "FaceGate",
    "get_embedder",
    # Reference store
    "ReferenceStore",
    "get_reference_store",
]
