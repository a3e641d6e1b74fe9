"""
Capture Session Module (enrollment)

Collects between 1 and max_samples face samples from a live frame stream while
an operator holds the capture action. Capture attempts run on a fixed cadence
(one per interval_sec) as asyncio tasks owned by the session, so the rest of
the application keeps running.

State machine:

    idle --start()--> acquiring --hold_begin()--> holding --hold_end()--> acquiring
    acquiring/holding --finalize()--> finalized      (terminal, yields ReferenceSet)
    idle/acquiring/holding --cancel()--> cancelled   (terminal, discards samples)

Reaching max_samples while holding ends the hold automatically.

What a "sample" is depends on the SampleStrategy:
    - EmbedOnCapture: run the embedder on each frame, keep the descriptor
    - DeferEmbedding: keep the raw frame, embed later at verification time

Usage:
    session = CaptureSession(camera, EmbedOnCapture(embedder), max_samples=5)
    await session.start()
    await session.hold_begin()
    ...
    await session.hold_end()
    reference_set = await session.finalize()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, List, Optional, Set, Tuple

import numpy as np

from facegate.camera import CameraLease, SharedCamera
from facegate.descriptors import CapturedSample, ReferenceSet
from facegate.embedder import FaceEmbedder
from facegate.errors import (
    DetectionError,
    DimensionMismatchError,
    EmptyCaptureError,
    InvalidStateError,
)

logger = logging.getLogger(__name__)

SamplesChangedCallback = Callable[[int, int], None]


class CaptureState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    HOLDING = "holding"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class CaptureMode(str, Enum):
    EMBED = "embed"
    DEFER = "defer"


# ============================================================
# Sample strategies
# ============================================================


class SampleStrategy(ABC):
    """Turns one frame into a CapturedSample and samples into a ReferenceSet."""

    mode: CaptureMode

    @abstractmethod
    async def sample(self, frame: np.ndarray) -> Optional[CapturedSample]:
        """
        Build a sample from a frame.

        Returns:
            CapturedSample, or None if the frame should be skipped.

        Raises:
            DetectionError: If the frame could not be processed.
        """
        pass

    @abstractmethod
    def build_reference_set(self, samples: List[CapturedSample]) -> ReferenceSet:
        """Freeze collected samples into a ReferenceSet."""
        pass


class EmbedOnCapture(SampleStrategy):
    """Run the embedder at capture time; frames without a face are skipped."""

    mode = CaptureMode.EMBED

    def __init__(self, embedder: FaceEmbedder, keep_images: bool = False):
        self.embedder = embedder
        self.keep_images = keep_images

    async def sample(self, frame: np.ndarray) -> Optional[CapturedSample]:
        detection = await self.embedder.detect(frame)
        if detection is None:
            return None
        return CapturedSample(
            descriptor=detection.descriptor,
            image=frame.copy() if self.keep_images else None,
        )

    def build_reference_set(self, samples: List[CapturedSample]) -> ReferenceSet:
        return ReferenceSet(
            descriptors=tuple(s.descriptor for s in samples),
            images=tuple(s.image for s in samples if s.image is not None),
            metadata={"mode": self.mode.value, "n_samples": len(samples)},
        )


class DeferEmbedding(SampleStrategy):
    """Store raw frames; descriptors are extracted when verification starts."""

    mode = CaptureMode.DEFER

    async def sample(self, frame: np.ndarray) -> Optional[CapturedSample]:
        return CapturedSample(image=frame.copy())

    def build_reference_set(self, samples: List[CapturedSample]) -> ReferenceSet:
        return ReferenceSet(
            images=tuple(s.image for s in samples),
            metadata={"mode": self.mode.value, "n_samples": len(samples)},
        )


def make_strategy(
    mode: str,
    embedder: Optional[FaceEmbedder] = None,
    keep_images: bool = False,
) -> SampleStrategy:
    """
    Create the sample strategy for a capture mode.

    Args:
        mode: "embed" or "defer".
        embedder: Required for "embed".
        keep_images: Keep source frames alongside descriptors ("embed" only).
    """
    mode = CaptureMode(mode)
    if mode is CaptureMode.DEFER:
        return DeferEmbedding()
    if embedder is None:
        raise ValueError("Capture mode 'embed' requires an embedder")
    return EmbedOnCapture(embedder, keep_images=keep_images)


# ============================================================
# Capture session
# ============================================================


class CaptureSession:
    """
    Enrollment capture session.

    Attributes:
        max_samples: Upper bound on collected samples.
        interval_sec: Cadence between capture attempts while holding.
        strategy: How frames become samples.
    """

    def __init__(
        self,
        camera: SharedCamera,
        strategy: SampleStrategy,
        max_samples: int = 5,
        interval_sec: float = 1.0,
    ):
        if max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {max_samples}")
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")

        self.max_samples = max_samples
        self.interval_sec = interval_sec
        self.strategy = strategy

        self._camera = camera
        self._lease: Optional[CameraLease] = None
        self._state = CaptureState.IDLE
        self._samples: List[CapturedSample] = []
        self._lock = asyncio.Lock()
        self._cadence_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        # Bumped on start and on every terminal transition; attempts issued
        # under an older generation are discarded on completion.
        self._generation = 0
        self._listeners: List[SamplesChangedCallback] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def samples(self) -> Tuple[CapturedSample, ...]:
        return tuple(self._samples)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def is_full(self) -> bool:
        return len(self._samples) >= self.max_samples

    @property
    def is_terminal(self) -> bool:
        return self._state in (CaptureState.FINALIZED, CaptureState.CANCELLED)

    def on_samples_changed(self, callback: SamplesChangedCallback) -> None:
        """Register callback(sample_count, max_samples), called after every change."""
        self._listeners.append(callback)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Make the camera live and begin acquiring.

        Raises:
            InvalidStateError: If the session is not idle.
            ResourceUnavailableError: If the camera cannot be acquired. The
                                      session stays idle.
        """
        self._require("start", CaptureState.IDLE)

        generation = self._generation
        lease = await self._camera.acquire(owner=self)
        if generation != self._generation or self._state is not CaptureState.IDLE:
            # cancel() ran while the camera was opening
            await lease.release()
            logger.info("Capture session cancelled while starting, camera released")
            return

        self._lease = lease
        self._generation += 1
        self._samples.clear()
        self._state = CaptureState.ACQUIRING
        logger.info(f"Capture session started (max_samples={self.max_samples}, mode={self.strategy.mode.value})")

    async def hold_begin(self) -> None:
        """Start capturing: one attempt now, then one per interval until full."""
        self._require("begin holding", CaptureState.ACQUIRING)

        self._state = CaptureState.HOLDING
        self._cadence_task = asyncio.create_task(self._run_cadence(self._generation))
        logger.debug("Capture hold started")

    async def hold_end(self) -> None:
        """Stop the cadence and keep the samples collected so far."""
        if self._state is CaptureState.ACQUIRING:
            return
        self._require("end holding", CaptureState.HOLDING)
        self._end_hold()
        logger.debug(f"Capture hold ended with {len(self._samples)} samples")

    async def remove_sample(self, sample_id: str) -> bool:
        """
        Delete one collected sample.

        Returns:
            True if the sample was removed, False if no sample has that id.
        """
        self._require("remove a sample", CaptureState.ACQUIRING, CaptureState.HOLDING)

        async with self._lock:
            for i, sample in enumerate(self._samples):
                if sample.sample_id == sample_id:
                    del self._samples[i]
                    break
            else:
                return False

        self._notify()
        return True

    async def finalize(self) -> ReferenceSet:
        """
        Freeze the collected samples into a ReferenceSet and release the camera.

        Raises:
            EmptyCaptureError: If no sample was collected (state is unchanged).
            InvalidStateError: If the session is not acquiring or holding.
        """
        self._require("finalize", CaptureState.ACQUIRING, CaptureState.HOLDING)

        async with self._lock:
            if not self._samples:
                raise EmptyCaptureError("Please capture at least one photo before saving.")
            samples = list(self._samples)
            self._samples.clear()
            self._generation += 1
            self._state = CaptureState.FINALIZED

        self._stop_cadence()
        self._cancel_inflight()
        try:
            reference_set = self.strategy.build_reference_set(samples)
        finally:
            await self._release_camera()

        logger.info(f"Capture session finalized with {len(samples)} samples")
        return reference_set

    async def cancel(self) -> None:
        """Discard all samples and release the camera. Idempotent."""
        if self.is_terminal:
            return

        self._generation += 1
        self._state = CaptureState.CANCELLED
        self._stop_cadence()
        self._cancel_inflight()

        had_samples = bool(self._samples)
        self._samples.clear()
        await self._release_camera()

        if had_samples:
            self._notify()
        logger.info("Capture session cancelled")

    async def __aenter__(self) -> "CaptureSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.cancel()
        return False

    # ------------------------------------------------------------------
    # Cadence and attempts
    # ------------------------------------------------------------------

    async def _run_cadence(self, generation: int) -> None:
        while self._state is CaptureState.HOLDING and generation == self._generation:
            if len(self._samples) + len(self._inflight) < self.max_samples:
                self._issue_attempt(generation)
            elif self.is_full:
                break
            await asyncio.sleep(self.interval_sec)

        if self._state is CaptureState.HOLDING and generation == self._generation:
            logger.info(f"Maximum number of samples captured ({self.max_samples})")
            self._end_hold()

    def _issue_attempt(self, generation: int) -> None:
        task = asyncio.create_task(self._attempt(generation, self._lease))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _attempt(self, generation: int, lease: Optional[CameraLease]) -> None:
        if lease is None:
            return

        try:
            frame = await lease.frame()
            if frame is None:
                logger.debug("No frame available, skipping capture attempt")
                return
            sample = await self.strategy.sample(frame)
        except DetectionError as e:
            logger.debug(f"Skipping frame: {e}")
            return
        except DimensionMismatchError as e:
            logger.error(f"Embedder contract violated, cancelling capture: {e}")
            if generation == self._generation:
                await self.cancel()
            return
        except Exception as e:
            logger.error(f"Capture attempt failed: {e}")
            return

        if sample is None:
            logger.debug("No face detected, skipping frame")
            return

        async with self._lock:
            if generation != self._generation or self._state not in (
                CaptureState.ACQUIRING,
                CaptureState.HOLDING,
            ):
                logger.debug("Discarding sample that completed after the session ended")
                return
            if self.is_full:
                logger.debug("Discarding sample beyond max_samples")
                return
            self._samples.append(sample)
            count = len(self._samples)

        logger.debug(f"Captured sample {count}/{self.max_samples} ({sample.sample_id})")

        if count >= self.max_samples and self._state is CaptureState.HOLDING:
            logger.info(f"Maximum number of samples captured ({self.max_samples})")
            self._end_hold()

        self._notify()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, operation: str, *states: CaptureState) -> None:
        if self._state not in states:
            raise InvalidStateError(f"Cannot {operation} while capture session is {self._state.value}")

    def _end_hold(self) -> None:
        self._stop_cadence()
        if self._state is CaptureState.HOLDING:
            self._state = CaptureState.ACQUIRING

    def _stop_cadence(self) -> None:
        task, self._cadence_task = self._cadence_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_inflight(self) -> None:
        for task in list(self._inflight):
            if task is not asyncio.current_task():
                task.cancel()

    async def _release_camera(self) -> None:
        lease, self._lease = self._lease, None
        if lease is not None:
            await lease.release()

    def _notify(self) -> None:
        count = len(self._samples)
        for callback in self._listeners:
            try:
                callback(count, self.max_samples)
            except Exception as e:
                logger.error(f"Sample listener failed: {e}")
