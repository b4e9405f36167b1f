from __future__ import annotations

"""Webcam frame source: camera acquisition and still-frame JPEG extraction."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import cv2
import numpy as np

from facegate.errors import CameraPermissionError, TransientCaptureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """Compressed still image plus the encoding parameters used to produce it."""

    data: bytes
    width: int
    height: int
    max_width: int
    quality: float
    captured_at: float


@dataclass
class CaptureHandle:
    """Open camera stream owned by the frame source."""

    capture: cv2.VideoCapture
    device: int
    opened_at: float = field(default_factory=time.time)
    released: bool = False


class FrameSource(Protocol):
    """Interface the session uses regardless of the capture backend."""

    def acquire(self) -> CaptureHandle:
        ...

    def capture_frame(self, handle: Optional[CaptureHandle], max_width: int, quality: float) -> Optional[Frame]:
        ...

    def release(self, handle: Optional[CaptureHandle]) -> None:
        ...


def encode_frame(image: Optional[np.ndarray], max_width: int, quality: float) -> Frame:
    """Downscale `image` to at most `max_width` (aspect preserved) and JPEG-encode it."""
    if image is None or image.size == 0:
        raise TransientCaptureError(detail="empty image")

    natural_h, natural_w = image.shape[:2]
    target_w, target_h = natural_w, natural_h
    if natural_w > max_width:
        target_w = max_width
        target_h = max(1, int(round(natural_h * max_width / natural_w)))
        image = cv2.resize(image, (target_w, target_h), interpolation=cv2.INTER_AREA)

    jpeg_quality = int(round(min(max(quality, 0.0), 1.0) * 100))
    ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, jpeg_quality])
    if not ok:
        raise TransientCaptureError(detail="jpeg encode failed")
    return Frame(
        data=buffer.tobytes(),
        width=target_w,
        height=target_h,
        max_width=max_width,
        quality=quality,
        captured_at=time.time(),
    )


class WebcamFrameSource:
    """OpenCV webcam reader gated on the first decoded frame."""

    def __init__(
        self,
        device: int = 0,
        first_frame_timeout_seconds: float = 0.8,
        capture_factory: Optional[Callable[[int], cv2.VideoCapture]] = None,
    ) -> None:
        self.device = device
        self.first_frame_timeout_seconds = first_frame_timeout_seconds
        self._capture_factory = capture_factory or cv2.VideoCapture
        # Serializes reads against release from the controlling thread.
        self._lock = threading.Lock()

    def acquire(self) -> CaptureHandle:
        """Open the camera, raising `CameraPermissionError` when it is unavailable."""
        try:
            capture = self._capture_factory(self.device)
        except cv2.error as exc:
            raise CameraPermissionError(detail=str(exc)) from exc

        if capture is None or not capture.isOpened():
            if capture is not None:
                capture.release()
            raise CameraPermissionError(detail=f"camera {self.device} could not be opened")

        handle = CaptureHandle(capture=capture, device=self.device)
        if not self._wait_first_frame(handle):
            # Not fatal: capture_frame reports a transient miss until frames arrive.
            logger.warning(
                "Camera %d produced no frame within %.1fs",
                self.device,
                self.first_frame_timeout_seconds,
            )
        logger.info("Camera %d acquired", self.device)
        return handle

    def _wait_first_frame(self, handle: CaptureHandle) -> bool:
        deadline = time.monotonic() + self.first_frame_timeout_seconds
        while True:
            ok, image = handle.capture.read()
            if ok and image is not None:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    def capture_frame(self, handle: Optional[CaptureHandle], max_width: int, quality: float) -> Optional[Frame]:
        """Grab and encode the current image, or `None` when no frame is ready."""
        with self._lock:
            if handle is None or handle.released:
                return None
            ok, image = handle.capture.read()
        if not ok or image is None:
            return None
        try:
            return encode_frame(image, max_width, quality)
        except TransientCaptureError as exc:
            logger.debug("Skipping frame: %s", exc)
            return None

    def release(self, handle: Optional[CaptureHandle]) -> None:
        """Stop the stream; safe on `None` or an already released handle."""
        if handle is None:
            return
        with self._lock:
            if handle.released:
                return
            handle.released = True
            handle.capture.release()
        logger.info("Camera %d released", handle.device)
