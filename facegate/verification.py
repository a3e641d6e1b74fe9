"""
Verification Session Module

Orchestrates one verification attempt: capture a single frame, extract the
face descriptor, match it against the passenger's ReferenceSet and report a
verdict to the booking flow.

State machine:

    idle --start()--> awaiting --capture()--> processing
    processing --(face)--> decided
    processing --(no face)--> awaiting        (retry allowed)
    any --cancel()--> idle

After a failed match the caller may capture() again while the camera stays
live. After a successful match the session releases the camera on its own
after grace_delay_sec, giving the UI time to show the success state.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from facegate.camera import CameraLease, SharedCamera
from facegate.descriptors import ReferenceSet
from facegate.embedder import FaceEmbedder, resolve_reference_set
from facegate.errors import (
    DetectionError,
    DimensionMismatchError,
    InvalidStateError,
    NoReferenceError,
)
from facegate.matching import Matcher, MatchResult

logger = logging.getLogger(__name__)

NO_FACE_MESSAGE = "No face detected. Please position your face clearly in the camera."
DETECTION_ERROR_MESSAGE = "An error occurred during verification. Please try again."
NO_REFERENCE_MESSAGE = "No reference faces available"


class VerificationState(str, Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    PROCESSING = "processing"
    DECIDED = "decided"


@dataclass
class VerificationVerdict:
    """
    Verdict notification consumed by the booking flow.

    Attributes:
        is_valid: True if the live face matches the enrolled identity.
        confidence: Display confidence in [0, 100]; 0 when no face was found.
        message: Human-readable outcome for the passenger.
        face_detected: False for the retryable "no face" outcome.
        distance: Minimum descriptor distance, when a face was matched.
    """

    is_valid: bool
    confidence: float
    message: str
    face_detected: bool = True
    distance: Optional[float] = None

    @classmethod
    def from_match(cls, result: MatchResult) -> "VerificationVerdict":
        if result.is_match:
            message = f"Identity verified with {result.confidence:.2f}% confidence."
        else:
            message = f"Verification failed. Confidence: {result.confidence:.2f}%."
        return cls(
            is_valid=result.is_match,
            confidence=result.confidence,
            message=message,
            face_detected=True,
            distance=result.distance,
        )

    @classmethod
    def no_face(cls, detection_failed: bool = False) -> "VerificationVerdict":
        return cls(
            is_valid=False,
            confidence=0.0,
            message=DETECTION_ERROR_MESSAGE if detection_failed else NO_FACE_MESSAGE,
            face_detected=False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


VerdictCallback = Callable[[VerificationVerdict], None]
ClosedCallback = Callable[[], None]


class VerificationSession:
    """
    Single-attempt face verification against one ReferenceSet.

    Args:
        camera: Shared camera guard; the session holds the lease while live.
        embedder: Face detector/embedder (must match the one used at enrollment).
        matcher: Decision algorithm.
        reference_set: Enrolled identity. Image-only sets are embedded on start().
        grace_delay_sec: Delay between a successful match and camera release.
    """

    def __init__(
        self,
        camera: SharedCamera,
        embedder: FaceEmbedder,
        matcher: Matcher,
        reference_set: Optional[ReferenceSet],
        grace_delay_sec: float = 2.0,
    ):
        self._camera = camera
        self._embedder = embedder
        self._matcher = matcher
        self._reference_set = reference_set
        self.grace_delay_sec = grace_delay_sec

        self._state = VerificationState.IDLE
        self._lease: Optional[CameraLease] = None
        self._verdict: Optional[VerificationVerdict] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._verdict_listeners: List[VerdictCallback] = []
        self._closed_listeners: List[ClosedCallback] = []

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def verdict(self) -> Optional[VerificationVerdict]:
        """The most recent verdict, or None."""
        return self._verdict

    @property
    def reference_set(self) -> Optional[ReferenceSet]:
        return self._reference_set

    @property
    def is_live(self) -> bool:
        """True while the session holds the camera."""
        return self._lease is not None

    def on_verdict(self, callback: VerdictCallback) -> None:
        self._verdict_listeners.append(callback)

    def on_closed(self, callback: ClosedCallback) -> None:
        """Register a callback for the automatic close after a successful match."""
        self._closed_listeners.append(callback)

    async def start(self) -> None:
        """
        Make the camera live and wait for capture().

        Raises:
            NoReferenceError: If the reference set is missing or empty, or no
                              face could be extracted from its images. Raised
                              before the camera is touched.
            ResourceUnavailableError: If the camera cannot be acquired.
            InvalidStateError: If the session is not idle.
        """
        if self._state is not VerificationState.IDLE:
            raise InvalidStateError(f"Cannot start while verification session is {self._state.value}")

        if self._reference_set is None or self._reference_set.is_empty:
            raise NoReferenceError(NO_REFERENCE_MESSAGE)

        generation = self._generation
        if not self._reference_set.is_resolved:
            self._reference_set = await resolve_reference_set(self._reference_set, self._embedder)
            if not self._reference_set.is_resolved:
                raise NoReferenceError(NO_REFERENCE_MESSAGE)
            if generation != self._generation:
                logger.info("Verification session cancelled while starting")
                return

        lease = await self._camera.acquire(owner=self)
        if generation != self._generation or self._state is not VerificationState.IDLE:
            # cancel() ran while the camera was opening
            await lease.release()
            logger.info("Verification session cancelled while starting, camera released")
            return

        self._lease = lease
        self._generation += 1
        self._verdict = None
        self._state = VerificationState.AWAITING
        logger.info(f"Verification session started ({len(self._reference_set)} reference descriptors)")

    async def capture(self) -> Optional[VerificationVerdict]:
        """
        Capture one frame and decide.

        Returns:
            The verdict, or None if the session was cancelled while the
            attempt was in flight.

        Raises:
            InvalidStateError: If no attempt is allowed in the current state.
            DimensionMismatchError: If the embedder and the reference set
                                    disagree on descriptor size. The camera is
                                    released and the session reset first.
            Exception: Any other camera or embedder failure, after the same
                       release and reset.
        """
        retry_after_failure = (
            self._state is VerificationState.DECIDED
            and self._verdict is not None
            and not self._verdict.is_valid
            and self._lease is not None
        )
        if self._state is not VerificationState.AWAITING and not retry_after_failure:
            raise InvalidStateError(f"Cannot capture while verification session is {self._state.value}")

        generation = self._generation
        self._state = VerificationState.PROCESSING

        detection_failed = False
        try:
            frame = await self._lease.frame()
            detection = await self._embedder.detect(frame) if frame is not None else None
        except DetectionError as e:
            logger.warning(f"Error during face validation: {e}")
            detection = None
            detection_failed = True
        except Exception as e:
            logger.error(f"Verification attempt failed: {e}")
            if generation == self._generation:
                await self.cancel()
            raise
        except BaseException:
            # Task cancelled mid-attempt
            if generation == self._generation:
                await self.cancel()
            raise

        if generation != self._generation:
            logger.debug("Discarding verification result that completed after cancel")
            return None

        if detection is None:
            self._state = VerificationState.AWAITING
            verdict = VerificationVerdict.no_face(detection_failed)
            self._publish(verdict)
            return verdict

        try:
            result = self._matcher.match(detection.descriptor, self._reference_set)
        except DimensionMismatchError:
            await self.cancel()
            raise

        verdict = VerificationVerdict.from_match(result)
        self._state = VerificationState.DECIDED
        logger.info(f"Validation result: Match={verdict.is_valid}, Confidence={verdict.confidence:.2f}%")
        self._publish(verdict)

        if verdict.is_valid:
            self._grace_task = asyncio.create_task(self._close_after_grace(generation))

        return verdict

    async def cancel(self) -> None:
        """Release the camera and reset to idle. Always succeeds."""
        self._generation += 1
        task, self._grace_task = self._grace_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        await self._release_camera()
        self._state = VerificationState.IDLE
        self._verdict = None

    async def __aenter__(self) -> "VerificationSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.cancel()
        return False

    async def _close_after_grace(self, generation: int) -> None:
        await asyncio.sleep(self.grace_delay_sec)
        if generation != self._generation:
            return

        await self._release_camera()
        logger.info("Verification complete, camera released")
        for callback in self._closed_listeners:
            try:
                callback()
            except Exception as e:
                logger.error(f"Close listener failed: {e}")

    async def _release_camera(self) -> None:
        lease, self._lease = self._lease, None
        if lease is not None:
            await lease.release()

    def _publish(self, verdict: VerificationVerdict) -> None:
        self._verdict = verdict
        for callback in self._verdict_listeners:
            try:
                callback(verdict)
            except Exception as e:
                logger.error(f"Verdict listener failed: {e}")
