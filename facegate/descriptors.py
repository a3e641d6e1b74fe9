"""
Face Descriptor Data Model

Data classes shared by the capture, matching and verification components:

- FaceDescriptor: read-only 1-D float32 numpy array (e.g. 128-dim dlib,
  512-dim ArcFace)
- Detection: one face found by an embedder, with its descriptor
- CapturedSample: one successful capture attempt during enrollment
- ReferenceSet: the immutable set of descriptors enrolled for one identity

Usage:
    from facegate.descriptors import ReferenceSet, as_descriptor

    reference = ReferenceSet(descriptors=(vec_a, vec_b))
    reference.descriptor_dim     # 128
    ReferenceSet.from_list(reference.to_list())
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from facegate.errors import DimensionMismatchError

FaceDescriptor = np.ndarray


def as_descriptor(values: Any) -> FaceDescriptor:
    """
    Convert a vector-like value into an immutable FaceDescriptor.

    Args:
        values: Any 1-D sequence or array of numbers.

    Returns:
        A read-only float32 copy of shape (D,).

    Raises:
        ValueError: If the input is empty, not 1-D, or contains NaN/inf.
    """
    descriptor = np.array(values, dtype=np.float32)
    if descriptor.ndim != 1 or descriptor.shape[0] == 0:
        raise ValueError(f"Descriptor must be a non-empty 1-D vector, got shape {descriptor.shape}")
    if not np.all(np.isfinite(descriptor)):
        raise ValueError("Descriptor contains non-finite values")
    descriptor.setflags(write=False)
    return descriptor


def generate_sample_id() -> str:
    """
    Generate a unique sample ID.

    Format: "smp_" followed by 8 random hex characters.
    """
    return f"smp_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True, eq=False)
class Detection:
    """
    A single face found by a FaceEmbedder.

    Attributes:
        descriptor: Identity embedding for the face.
        bounding_box: (x1, y1, x2, y2) in pixels.
        score: Detector confidence (1.0 when the backend does not report one).
    """

    descriptor: FaceDescriptor
    bounding_box: Tuple[int, int, int, int] = (0, 0, 0, 0)
    score: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "descriptor", as_descriptor(self.descriptor))


@dataclass
class CapturedSample:
    """
    One sample collected by a capture session.

    At least one of descriptor/image is required: embed-on-capture enrollments
    fill the descriptor (and optionally the image for thumbnails), deferred
    enrollments keep only the image.
    """

    descriptor: Optional[FaceDescriptor] = None
    image: Optional[np.ndarray] = None
    sample_id: str = field(default_factory=generate_sample_id)
    captured_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.descriptor is None and self.image is None:
            raise ValueError("CapturedSample needs a descriptor or an image")
        if self.descriptor is not None:
            self.descriptor = as_descriptor(self.descriptor)


@dataclass(frozen=True, eq=False)
class ReferenceSet:
    """
    Immutable set of face descriptors enrolled for one identity.

    Attributes:
        descriptors: Ordered descriptors, all of the same dimension.
        images: Source frames. For deferred enrollments these are the only
                content until the set is resolved by an embedder.
        metadata: Free-form enrollment details (mode, sample count, ...).
    """

    descriptors: Tuple[FaceDescriptor, ...] = ()
    images: Tuple[np.ndarray, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        descriptors = tuple(as_descriptor(d) for d in self.descriptors)
        if descriptors:
            expected = descriptors[0].shape[0]
            for descriptor in descriptors[1:]:
                if descriptor.shape[0] != expected:
                    raise DimensionMismatchError(expected, descriptor.shape[0])
        object.__setattr__(self, "descriptors", descriptors)
        object.__setattr__(self, "images", tuple(self.images))

    def __len__(self) -> int:
        return len(self.descriptors)

    @property
    def is_empty(self) -> bool:
        """True if there is neither a descriptor nor an image to match against."""
        return not self.descriptors and not self.images

    @property
    def is_resolved(self) -> bool:
        """True if the set carries descriptors (deferred sets start unresolved)."""
        return len(self.descriptors) > 0

    @property
    def descriptor_dim(self) -> int:
        """Return the descriptor dimension, or 0 for an unresolved set."""
        return self.descriptors[0].shape[0] if self.descriptors else 0

    def as_matrix(self) -> np.ndarray:
        """Stack descriptors into an (N, D) float32 array."""
        if not self.descriptors:
            return np.empty((0, 0), dtype=np.float32)
        return np.stack(self.descriptors)

    def to_list(self) -> List[List[float]]:
        """Serialize descriptors as an ordered list of numeric vectors."""
        return [d.tolist() for d in self.descriptors]

    @classmethod
    def from_list(
        cls,
        vectors: Sequence[Sequence[float]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ReferenceSet":
        """Rebuild a ReferenceSet from the output of to_list()."""
        return cls(descriptors=tuple(vectors), metadata=dict(metadata or {}))
