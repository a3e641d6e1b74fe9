"""
Matching Module for Face Verification

This package contains the matching algorithm that compares a fresh face
descriptor with an enrolled ReferenceSet.

Components:
    - interfaces: MatchResult and the abstract Matcher
    - euclidean_matcher: minimum Euclidean distance with a decision threshold

Usage:
    from facegate.matching import EuclideanMatcher
    result = EuclideanMatcher({"threshold": 0.6}).match(descriptor, reference_set)
"""

from facegate.matching.interfaces import (
    MatchResult,
    Matcher,
    confidence_from_distance,
)
from facegate.matching.euclidean_matcher import EuclideanMatcher, DEFAULT_THRESHOLD

__all__ = [
    "MatchResult",
    "Matcher",
    "confidence_from_distance",
    "EuclideanMatcher",
    "DEFAULT_THRESHOLD",
]
