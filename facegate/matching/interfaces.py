"""
Matching Interfaces Module

This module defines the result type and abstract interface for comparing a
freshly captured face descriptor against an enrolled ReferenceSet.

A Matcher is a pure, synchronous computation: it owns no resources and can be
shared freely between sessions.

Usage:
    from facegate.matching.interfaces import MatchResult, Matcher

    class MyMatcher(Matcher):
        def match(self, descriptor, reference_set) -> MatchResult:
            ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np

from facegate.descriptors import ReferenceSet


@dataclass
class MatchResult:
    """
    Result of a matching operation.

    Attributes:
        is_match: True if the probe belongs to the enrolled identity.
        distance: Distance to the closest reference descriptor (>= 0).
                  Lower distance = more similar.
        confidence: Display-only similarity in [0, 100]. Monotonically
                    non-increasing in distance, not a calibrated probability.
        details: Algorithm-specific details for logging and debugging.
                 Examples: {"closest_index": 2, "n_references": 5}
    """

    is_match: bool
    distance: float
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)


def confidence_from_distance(distance: float) -> float:
    """
    Map a distance to a confidence percentage.

    confidence = clamp(0, 100, (1 - distance) * 100)
    """
    return float(max(0.0, min(100.0, (1.0 - distance) * 100.0)))


class Matcher(ABC):
    """
    Abstract base class for descriptor-vs-reference-set matching.

    Implementations must:
        - raise NoReferenceError for an empty or unresolved reference set
        - raise DimensionMismatchError when probe and references differ in size
        - never mutate the reference set
    """

    @abstractmethod
    def match(self, descriptor: np.ndarray, reference_set: ReferenceSet) -> MatchResult:
        """
        Decide whether a descriptor belongs to the identity of reference_set.

        Args:
            descriptor: Probe descriptor from the verification capture. Shape (D,).
            reference_set: Enrolled descriptors for one identity.

        Returns:
            MatchResult with the minimum distance and decision.
        """
        pass
