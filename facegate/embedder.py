"""
Face Detector / Embedder

Given one image frame, returns at most one face plus its identity descriptor,
or None when no face is found. The capture and verification sessions depend
only on the FaceEmbedder interface; the model behind it is pluggable.

Supports two model backends:
  - dlib (face_recognition): HOG/CNN detector + 128-dim ResNet descriptor.
    Euclidean threshold 0.6 is the library's native tolerance.
  - insightface: buffalo_l bundle with SCRFD + ArcFace (512-dim, L2-normalized)

Usage:
    from facegate.embedder import ModelFaceEmbedder

    embedder = ModelFaceEmbedder(config)
    embedder.load_model()

    detection = await embedder.detect(frame_bgr)   # Detection or None
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Union

import cv2
import numpy as np

from facegate.descriptors import Detection, ReferenceSet, as_descriptor
from facegate.errors import DetectionError, DimensionMismatchError

logger = logging.getLogger(__name__)

# Backend availability flags
_INSIGHTFACE_AVAILABLE = False
_DLIB_AVAILABLE = False

try:
    from insightface.app import FaceAnalysis
    _INSIGHTFACE_AVAILABLE = True
except ImportError:
    pass

try:
    import face_recognition
    _DLIB_AVAILABLE = True
except ImportError:
    pass


class FaceEmbedder(ABC):
    """
    Abstract face detector + embedder capability.

    Implementations return the single most prominent face of the frame.
    """

    embedding_dim: int = 128

    @abstractmethod
    async def detect(self, image: np.ndarray) -> Optional[Detection]:
        """
        Detect one face and compute its descriptor.

        Args:
            image: BGR image of shape (H, W, 3), uint8.

        Returns:
            Detection, or None if no face is found.

        Raises:
            DetectionError: If the frame cannot be processed.
        """
        pass


class ModelFaceEmbedder(FaceEmbedder):
    """
    Face embedder backed by a pre-trained recognition model.

    Args:
        config: Dictionary with keys:
            - backend: "dlib", "insightface" or "auto" (default)
            - model: insightface model bundle name (default "buffalo_l")
            - dlib_model: face_recognition detector, "hog" or "cnn"
            - device: "cuda" or "cpu"
            - embedding_dim: Expected descriptor dimension; detect() raises
                             DimensionMismatchError on any other size.
                             Defaults to 128 (dlib) or 512 (insightface)
    """

    def __init__(self, config: Optional[dict] = None):
        if config is None:
            config = {}

        self.model_name = config.get("model", "buffalo_l")
        self.dlib_model = config.get("dlib_model", "hog")
        self.device = config.get("device", "cpu")

        requested_backend = config.get("backend", "auto")
        if requested_backend == "auto":
            if _DLIB_AVAILABLE:
                self.backend = "dlib"
            elif _INSIGHTFACE_AVAILABLE:
                self.backend = "insightface"
            else:
                raise ImportError(
                    "No face embedding backend available. "
                    "Install face_recognition: pip install face_recognition\n"
                    "Or insightface: pip install insightface onnxruntime"
                )
        else:
            self.backend = requested_backend

        default_dim = 512 if self.backend == "insightface" else 128
        self.embedding_dim = config.get("embedding_dim") or default_dim

        self._model = None
        self.is_loaded = False

    def load_model(self) -> None:
        """Load the recognition model. Called lazily by detect() if needed."""
        if self.is_loaded:
            return

        if self.backend == "insightface":
            self._load_insightface()
        elif self.backend == "dlib":
            if not _DLIB_AVAILABLE:
                raise ImportError("face_recognition not installed. Run: pip install face_recognition")
        else:
            raise ValueError(f"Unknown backend: {self.backend}")

        self.is_loaded = True
        logger.info(f"FaceEmbedder loaded (backend={self.backend}, dim={self.embedding_dim})")

    def _load_insightface(self) -> None:
        if not _INSIGHTFACE_AVAILABLE:
            raise ImportError("insightface not installed. Run: pip install insightface onnxruntime")

        if self.device == "cuda":
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        else:
            providers = ["CPUExecutionProvider"]

        self._model = FaceAnalysis(name=self.model_name, providers=providers)
        self._model.prepare(ctx_id=0 if self.device == "cuda" else -1, det_size=(640, 640))

    async def detect(self, image: np.ndarray) -> Optional[Detection]:
        if image is None or not isinstance(image, np.ndarray) or image.ndim != 3:
            raise DetectionError("Expected a BGR image of shape (H, W, 3)")

        if not self.is_loaded:
            await asyncio.to_thread(self.load_model)

        try:
            detection = await asyncio.to_thread(self._detect_sync, image)
        except (cv2.error, ValueError, RuntimeError) as e:
            raise DetectionError(f"Face detection failed: {e}") from e

        if detection is not None and detection.descriptor.shape[0] != self.embedding_dim:
            raise DimensionMismatchError(self.embedding_dim, detection.descriptor.shape[0])
        return detection

    def _detect_sync(self, image: np.ndarray) -> Optional[Detection]:
        if self.backend == "insightface":
            return self._detect_insightface(image)
        return self._detect_dlib(image)

    def _detect_insightface(self, image: np.ndarray) -> Optional[Detection]:
        # insightface expects BGR input (same as OpenCV)
        faces = self._model.get(image)
        if not faces:
            return None

        best_face = max(faces, key=lambda f: f.det_score)
        x1, y1, x2, y2 = (int(v) for v in best_face.bbox)
        return Detection(
            descriptor=best_face.normed_embedding,
            bounding_box=(x1, y1, x2, y2),
            score=float(best_face.det_score),
        )

    def _detect_dlib(self, image: np.ndarray) -> Optional[Detection]:
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        locations = face_recognition.face_locations(rgb, model=self.dlib_model)
        if not locations:
            return None

        # (top, right, bottom, left); keep the largest face
        top, right, bottom, left = max(
            locations, key=lambda loc: (loc[2] - loc[0]) * (loc[1] - loc[3])
        )
        encodings = face_recognition.face_encodings(rgb, [(top, right, bottom, left)])
        if not encodings:
            return None

        return Detection(descriptor=encodings[0], bounding_box=(left, top, right, bottom))


ScriptedResult = Union[None, Sequence[float], np.ndarray, Exception]


class StubFaceEmbedder(FaceEmbedder):
    """
    Placeholder embedder for tests and demos without a model.

    Returns scripted results in order, then falls back to a default
    descriptor for every frame. A scripted None means "no face", a scripted
    exception is raised from detect().

    Args:
        results: Scripted results consumed one per call.
        default: Descriptor returned once the script is exhausted
                 (zeros of embedding_dim when omitted).
        embedding_dim: Descriptor dimension.
        delay: Seconds each call waits, to simulate inference time.
    """

    def __init__(
        self,
        results: Optional[Iterable[ScriptedResult]] = None,
        default: Optional[Sequence[float]] = None,
        embedding_dim: int = 128,
        delay: float = 0.0,
    ):
        self.embedding_dim = embedding_dim
        self._script: List[ScriptedResult] = list(results or [])
        self._default = as_descriptor(default if default is not None else np.zeros(embedding_dim))
        self.delay = delay
        self.calls = 0

    async def detect(self, image: np.ndarray) -> Optional[Detection]:
        self.calls += 1
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        if image is None:
            return None

        if self._script:
            result = self._script.pop(0)
            if isinstance(result, Exception):
                raise result
            if result is None:
                return None
            return Detection(descriptor=result)

        return Detection(descriptor=self._default)


async def resolve_reference_set(reference_set: ReferenceSet, embedder: FaceEmbedder) -> ReferenceSet:
    """
    Embed the images of a deferred (image-only) reference set.

    Images without a detectable face, or that fail detection, are skipped.

    Args:
        reference_set: Set whose images should be embedded.
        embedder: Embedder used for verification.

    Returns:
        The input unchanged if it already has descriptors, otherwise a new
        ReferenceSet carrying the extracted descriptors and the same images.
        The result is unresolved if no face was found in any image.
    """
    if reference_set.is_resolved:
        return reference_set

    descriptors = []
    for i, image in enumerate(reference_set.images):
        try:
            detection = await embedder.detect(image)
        except DetectionError as e:
            logger.warning(f"Skipping reference image {i}: {e}")
            continue
        if detection is not None:
            descriptors.append(detection.descriptor)

    if descriptors:
        logger.info(
            f"Extracted {len(descriptors)} face descriptors from "
            f"{len(reference_set.images)} saved images"
        )
    else:
        logger.error("No faces detected in saved images")

    metadata = dict(reference_set.metadata)
    metadata["resolved_from_images"] = True
    return ReferenceSet(
        descriptors=tuple(descriptors),
        images=reference_set.images,
        metadata=metadata,
    )
