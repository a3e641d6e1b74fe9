"""
Euclidean Matcher: nearest-neighbour distance against a ReferenceSet.

The probe descriptor is compared with every enrolled descriptor; the minimum
Euclidean distance decides the match. With 128-dim dlib descriptors a distance
below 0.6 is the conventional "same person" threshold.

    d_min      = min_i ||probe - reference_i||
    is_match   = d_min < threshold
    confidence = clamp(0, 100, (1 - d_min) * 100)
"""

import logging
from typing import Optional

import numpy as np

from facegate.descriptors import ReferenceSet
from facegate.errors import DimensionMismatchError, NoReferenceError
from facegate.matching.interfaces import Matcher, MatchResult, confidence_from_distance

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6


class EuclideanMatcher(Matcher):
    """
    Minimum Euclidean distance matcher.

    Args:
        config: Dictionary with optional keys:
            - threshold: Maximum distance still considered a match
                         (default 0.6, must be > 0)
    """

    def __init__(self, config: Optional[dict] = None):
        if config is None:
            config = {}
        self.threshold = float(config.get("threshold", DEFAULT_THRESHOLD))
        if self.threshold <= 0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")

    @staticmethod
    def distances(descriptor: np.ndarray, reference_set: ReferenceSet) -> np.ndarray:
        """
        Euclidean distance from descriptor to every reference descriptor.

        Returns:
            (N,) float64 array, in reference order.

        Raises:
            NoReferenceError: If the reference set has no descriptors.
            DimensionMismatchError: If the probe dimension differs.
        """
        if reference_set is None or not reference_set.is_resolved:
            raise NoReferenceError("Reference set has no descriptors to match against")

        probe = np.asarray(descriptor, dtype=np.float64).ravel()
        if probe.shape[0] != reference_set.descriptor_dim:
            raise DimensionMismatchError(reference_set.descriptor_dim, probe.shape[0])

        references = reference_set.as_matrix().astype(np.float64)
        return np.linalg.norm(references - probe, axis=1)

    def match(self, descriptor: np.ndarray, reference_set: ReferenceSet) -> MatchResult:
        """
        Compare a probe descriptor with a reference set.

        Args:
            descriptor: (D,) probe descriptor.
            reference_set: Enrolled descriptors of dimension D.

        Returns:
            MatchResult with the minimum distance, decision and confidence.
        """
        distances = self.distances(descriptor, reference_set)

        closest = int(np.argmin(distances))
        min_distance = float(distances[closest])
        is_match = min_distance < self.threshold
        confidence = confidence_from_distance(min_distance)

        logger.debug(
            f"Closest match distance: {min_distance:.4f} "
            f"(reference {closest + 1}/{len(distances)}, match={is_match})"
        )

        return MatchResult(
            is_match=is_match,
            distance=min_distance,
            confidence=confidence,
            details={
                "method": "euclidean_min",
                "closest_index": closest,
                "n_references": len(distances),
                "threshold": self.threshold,
            },
        )
