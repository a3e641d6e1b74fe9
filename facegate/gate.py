"""
Face Gate

Entry point used by the surrounding booking flow. A FaceGate wires one frame
source, one embedder and one matcher together and hands out enrollment and
verification sessions that share a single camera guard, so at most one
session holds the camera at a time.

Usage:
    from facegate.gate import FaceGate, get_embedder
    from facegate.camera import OpenCVFrameSource

    gate = FaceGate(OpenCVFrameSource(), get_embedder())

    enrollment = gate.begin_enrollment(max_samples=5)
    await enrollment.start()
    await enrollment.hold_begin()
    ...
    reference_set = await enrollment.finalize()

    verification = gate.begin_verification(reference_set)
    verification.on_verdict(lambda verdict: print(verdict.message))
    await verification.start()
    await verification.capture()
"""

import logging
from typing import Any, Dict, Optional

from facegate.camera import FrameSource, SharedCamera
from facegate.capture import CaptureSession, make_strategy
from facegate.config import get_config, get_embedder_config
from facegate.descriptors import ReferenceSet
from facegate.embedder import FaceEmbedder, ModelFaceEmbedder
from facegate.matching import EuclideanMatcher, Matcher
from facegate.verification import VerificationSession

logger = logging.getLogger(__name__)


class FaceGate:
    """
    Factory for capture and verification sessions.

    Args:
        frame_source: Source of live frames (webcam or client-pushed frames).
        embedder: Face detector/embedder used for both enrollment and verification.
        matcher: Decision algorithm. Defaults to EuclideanMatcher built from
                 the "matching" config section.
        config: Full configuration dict. Defaults to get_config(); pass {}
                to use built-in defaults only.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        embedder: FaceEmbedder,
        matcher: Optional[Matcher] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        if config is None:
            config = get_config()

        self.camera = SharedCamera(frame_source)
        self.embedder = embedder
        self.matcher = matcher or EuclideanMatcher(config.get("matching", {}))
        self.capture_config = config.get("capture", {})
        self.verification_config = config.get("verification", {})

    def begin_enrollment(
        self,
        max_samples: Optional[int] = None,
        mode: Optional[str] = None,
        keep_images: Optional[bool] = None,
    ) -> CaptureSession:
        """
        Create an enrollment capture session (not started yet).

        Args:
            max_samples: Maximum samples to collect (config default 5).
            mode: "embed" or "defer" (config default "embed").
            keep_images: Keep frames alongside descriptors in "embed" mode.
        """
        if max_samples is None:
            max_samples = self.capture_config.get("max_samples", 5)
        if mode is None:
            mode = self.capture_config.get("mode", "embed")
        if keep_images is None:
            keep_images = self.capture_config.get("keep_images", False)

        strategy = make_strategy(mode, self.embedder, keep_images=keep_images)
        return CaptureSession(
            self.camera,
            strategy,
            max_samples=max_samples,
            interval_sec=self.capture_config.get("interval_sec", 1.0),
        )

    def begin_verification(self, reference_set: Optional[ReferenceSet]) -> VerificationSession:
        """
        Create a verification session for one enrolled identity (not started yet).

        An empty or missing reference set is accepted here and rejected by
        start() with NoReferenceError.
        """
        return VerificationSession(
            self.camera,
            self.embedder,
            self.matcher,
            reference_set,
            grace_delay_sec=self.verification_config.get("grace_delay_sec", 2.0),
        )


# Singleton instance for the embedder (model loading is expensive)
_embedder_instance: Optional[FaceEmbedder] = None


def get_embedder() -> FaceEmbedder:
    """
    Get or create the shared ModelFaceEmbedder configured from config.yaml.

    The model itself is loaded lazily on the first detection.
    """
    global _embedder_instance

    if _embedder_instance is None:
        _embedder_instance = ModelFaceEmbedder(get_embedder_config())
        logger.info(f"Face embedder created (backend={_embedder_instance.backend})")

    return _embedder_instance
