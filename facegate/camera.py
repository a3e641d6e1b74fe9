"""
Camera / Frame Source Module

Frame sources supply successive image frames to the capture and verification
sessions. The camera is an exclusively owned resource: sessions never open a
FrameSource directly, they acquire a CameraLease from a SharedCamera which
guarantees a single live owner and release-exactly-once semantics.

Components:
    - FrameSource: abstract open/close/current_frame interface (coroutines)
    - OpenCVFrameSource: local webcam through cv2.VideoCapture
    - LatestFrameSource: frames pushed by a remote client (e.g. over WebSocket)
    - SharedCamera / CameraLease: single-owner scoped acquisition

Usage:
    camera = SharedCamera(OpenCVFrameSource(CameraConfig(device_id=0)))
    lease = await camera.acquire(owner=session)
    frame = await lease.frame()
    await lease.release()
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import cv2
import numpy as np

from facegate.errors import ResourceUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Configuration for webcam capture."""
    device_id: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30

    @classmethod
    def from_dict(cls, config: dict) -> "CameraConfig":
        return cls(
            device_id=config.get("device_id", 0),
            width=config.get("width", 640),
            height=config.get("height", 480),
            fps=config.get("fps", 30),
        )


class FrameSource(ABC):
    """
    Abstract source of image frames.

    The handle returned by open() is opaque to callers and must be passed back
    to close() and current_frame().
    """

    @abstractmethod
    async def open(self) -> Any:
        """
        Make the source live.

        Returns:
            A stream handle.

        Raises:
            ResourceUnavailableError: If the device cannot be opened.
        """
        pass

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Release the stream opened by open()."""
        pass

    @abstractmethod
    async def current_frame(self, handle: Any) -> Optional[np.ndarray]:
        """
        Grab the current frame.

        Returns:
            BGR image of shape (H, W, 3), or None if no frame is available.
        """
        pass


class OpenCVFrameSource(FrameSource):
    """
    Local webcam frame source backed by cv2.VideoCapture.

    Blocking OpenCV calls run in a worker thread so the event loop keeps
    serving timers and other sessions.
    """

    def __init__(self, config: Optional[CameraConfig] = None):
        self.config = config or CameraConfig()

    def _open_sync(self) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(self.config.device_id)
        if not cap.isOpened():
            cap.release()
            raise ResourceUnavailableError(f"Failed to open camera {self.config.device_id}")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        cap.set(cv2.CAP_PROP_FPS, self.config.fps)
        return cap

    async def open(self) -> cv2.VideoCapture:
        cap = await asyncio.to_thread(self._open_sync)
        logger.info(
            f"Opened camera {self.config.device_id} at "
            f"{self.config.width}x{self.config.height}"
        )
        return cap

    async def close(self, handle: cv2.VideoCapture) -> None:
        await asyncio.to_thread(handle.release)
        logger.info("Camera closed")

    async def current_frame(self, handle: cv2.VideoCapture) -> Optional[np.ndarray]:
        ret, frame = await asyncio.to_thread(handle.read)
        if not ret:
            return None
        return frame


class LatestFrameSource(FrameSource):
    """
    Frame source fed by a remote client.

    The client pushes frames as they arrive; current_frame() returns the most
    recent one. Frames pushed while the source is closed are dropped.
    """

    def __init__(self):
        self._frame: Optional[np.ndarray] = None
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def push(self, frame: np.ndarray) -> None:
        """Replace the current frame."""
        if self._is_open:
            self._frame = frame

    async def open(self) -> "LatestFrameSource":
        self._frame = None
        self._is_open = True
        return self

    async def close(self, handle: Any) -> None:
        self._is_open = False
        self._frame = None

    async def current_frame(self, handle: Any) -> Optional[np.ndarray]:
        return self._frame


class CameraLease:
    """
    Exclusive, scoped ownership of a live frame source.

    release() is idempotent: the underlying stream is closed exactly once no
    matter how many exit paths call it.
    """

    def __init__(self, camera: "SharedCamera", owner: Any, handle: Any):
        self._camera = camera
        self.owner = owner
        self._handle = handle
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def frame(self) -> Optional[np.ndarray]:
        """Grab the current frame, or None after release."""
        if self._released:
            return None
        return await self._camera.source.current_frame(self._handle)

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._camera.source.close(self._handle)
        finally:
            self._camera._on_released(self)


class SharedCamera:
    """
    Single-owner guard around a FrameSource.

    Only one session (capture or verification) may hold the camera live at a
    time. A second acquire() while a lease is outstanding fails with
    ResourceUnavailableError instead of opening a second stream.
    """

    def __init__(self, source: FrameSource):
        self.source = source
        self._lease: Optional[CameraLease] = None

    @property
    def owner(self) -> Any:
        return self._lease.owner if self._lease is not None else None

    @property
    def is_live(self) -> bool:
        return self._lease is not None

    async def acquire(self, owner: Any) -> CameraLease:
        """
        Open the source on behalf of owner.

        Raises:
            ResourceUnavailableError: If another owner holds the camera or the
                                      source cannot be opened.
        """
        if self._lease is not None:
            raise ResourceUnavailableError(
                f"Camera is in use by {type(self._lease.owner).__name__}"
            )

        # Reserve before awaiting so a concurrent acquire() sees the camera taken
        placeholder = CameraLease(self, owner, None)
        self._lease = placeholder
        try:
            handle = await self.source.open()
        except ResourceUnavailableError:
            self._lease = None
            raise
        except Exception as e:
            self._lease = None
            raise ResourceUnavailableError(f"Failed to open frame source: {e}") from e
        except BaseException:
            # Task cancelled while opening
            self._lease = None
            raise

        lease = CameraLease(self, owner, handle)
        self._lease = lease
        return lease

    def _on_released(self, lease: CameraLease) -> None:
        if self._lease is lease:
            self._lease = None


def frame_to_base64(frame: np.ndarray, format: str = "jpeg") -> str:
    """
    Convert a frame to a base64-encoded string for WebSocket transmission.

    Args:
        frame: BGR numpy array
        format: Image format ('jpeg' or 'png')
    """
    if format == "jpeg":
        encode_param = [int(cv2.IMWRITE_JPEG_QUALITY), 85]
        success, buffer = cv2.imencode(".jpg", frame, encode_param)
    else:
        success, buffer = cv2.imencode(".png", frame)

    if not success:
        raise ValueError("Failed to encode frame")

    return base64.b64encode(buffer).decode("utf-8")


def frame_from_base64(b64_string: str) -> Optional[np.ndarray]:
    """
    Decode a base64-encoded JPEG/PNG string to a BGR numpy array.

    Returns:
        BGR numpy array, or None if the payload is not a decodable image.
    """
    try:
        img_bytes = base64.b64decode(b64_string, validate=True)
    except (ValueError, TypeError) as e:
        logger.warning(f"Failed to decode base64 frame: {e}")
        return None

    np_arr = np.frombuffer(img_bytes, np.uint8)
    if np_arr.size == 0:
        return None
    return cv2.imdecode(np_arr, cv2.IMREAD_COLOR)
