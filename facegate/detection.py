from __future__ import annotations

"""Bounded-attempt face detection loop."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from facegate.activity import ActivityLog
from facegate.camera import CaptureHandle, Frame, FrameSource
from facegate.extraction import extract_face_count
from facegate.upload_queue import make_id

logger = logging.getLogger(__name__)


class FaceRelay(Protocol):
    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        ...


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class DetectionAttempt:
    attempt_number: int
    frame: Optional[Frame]
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class DetectionOutcome:
    """Terminal result of one detection cycle."""

    kind: OutcomeKind
    attempts: int
    frame: Optional[Frame] = None
    response: Optional[Dict[str, Any]] = None
    faces: int = 0

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS


class DetectionPoller:
    """Capture, submit, inspect; stop on the first positive face count.

    Attempts run strictly one after another on the calling thread. A failed
    relay call, a zero count, and a missing frame each consume one attempt.
    Setting `abort` stops the cycle at the next check; a response that lands
    after the abort is discarded.
    """

    def __init__(
        self,
        relay: FaceRelay,
        log: ActivityLog,
        abort: threading.Event,
        retry_delay_seconds: float = 0.5,
        max_width: int = 900,
        quality: float = 0.7,
    ) -> None:
        self.relay = relay
        self.log = log
        self.abort = abort
        self.retry_delay_seconds = retry_delay_seconds
        self.max_width = max_width
        self.quality = quality
        self.history: List[DetectionAttempt] = []

    def run_detection_cycle(
        self,
        frame_source: FrameSource,
        handle: Optional[CaptureHandle],
        max_attempts: int = 3,
    ) -> DetectionOutcome:
        attempts = 0
        while attempts < max_attempts:
            if attempts and self.abort.wait(self.retry_delay_seconds):
                return DetectionOutcome(kind=OutcomeKind.CANCELLED, attempts=attempts)
            if self.abort.is_set():
                return DetectionOutcome(kind=OutcomeKind.CANCELLED, attempts=attempts)

            attempts += 1
            attempt = DetectionAttempt(
                attempt_number=attempts,
                frame=frame_source.capture_frame(handle, self.max_width, self.quality),
            )
            self.history.append(attempt)
            self.log.add(f"attempt {attempts}/{max_attempts}: {make_id()}")

            if attempt.frame is None:
                self.log.add("no frame available")
                continue

            response = self._submit(attempt.frame)
            if self.abort.is_set():
                return DetectionOutcome(kind=OutcomeKind.CANCELLED, attempts=attempts)

            faces = extract_face_count(response)
            if faces > 0:
                self.log.add(f"face found ({faces})")
                return DetectionOutcome(
                    kind=OutcomeKind.SUCCESS,
                    attempts=attempts,
                    frame=attempt.frame,
                    response=response,
                    faces=faces,
                )
            if response.get("ok") is False:
                self.log.add(f"detection failed: {response.get('error', 'unknown error')}")
            else:
                self.log.add("no face detected")

        return DetectionOutcome(kind=OutcomeKind.EXHAUSTED, attempts=attempts)

    def _submit(self, frame: Frame) -> Dict[str, Any]:
        try:
            response = self.relay.detect_faces(frame.data)
        except Exception as exc:
            logger.exception("Face detection call raised")
            return {"ok": False, "error": str(exc)}
        if not isinstance(response, dict):
            return {"ok": False, "error": "invalid-response"}
        return response
