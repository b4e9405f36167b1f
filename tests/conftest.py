from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest

from facegate.camera import CaptureHandle, Frame
from facegate.errors import CameraPermissionError
from facegate.session import CaptureSchedule, Session


def make_frame(data: bytes = b"\xff\xd8fake-jpeg") -> Frame:
    return Frame(data=data, width=640, height=480, max_width=900, quality=0.7, captured_at=time.time())


class FakeFrameSource:
    """Counts camera lifecycle calls; frames are canned bytes."""

    def __init__(self, deny: bool = False, frames_ready: bool = True) -> None:
        self.deny = deny
        self.frames_ready = frames_ready
        self.acquired = 0
        self.released = 0
        self.capture_times: List[float] = []
        self._lock = threading.Lock()

    def acquire(self) -> CaptureHandle:
        if self.deny:
            raise CameraPermissionError(detail="denied by test")
        with self._lock:
            self.acquired += 1
        return CaptureHandle(capture=object(), device=0)

    def capture_frame(self, handle: Optional[CaptureHandle], max_width: int, quality: float) -> Optional[Frame]:
        with self._lock:
            self.capture_times.append(time.monotonic())
        if handle is None or handle.released or not self.frames_ready:
            return None
        return make_frame()

    def release(self, handle: Optional[CaptureHandle]) -> None:
        if handle is None or handle.released:
            return
        handle.released = True
        with self._lock:
            self.released += 1

    @property
    def captures(self) -> int:
        with self._lock:
            return len(self.capture_times)


class ScriptedRelay:
    """Relay double: deliveries succeed unless `deliver` says otherwise, detections follow a script."""

    def __init__(
        self,
        detect_responses: Optional[List[Dict[str, Any]]] = None,
        deliver: Optional[Callable[[bytes, str], Dict[str, Any]]] = None,
    ) -> None:
        self.detect_responses = list(detect_responses or [])
        self.deliver = deliver
        self.delivered: List[str] = []
        self.detect_times: List[float] = []
        self._lock = threading.Lock()

    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        if self.deliver is not None:
            return self.deliver(image_bytes, photo_id)
        with self._lock:
            self.delivered.append(photo_id)
        return {"ok": True}

    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        with self._lock:
            self.detect_times.append(time.monotonic())
            if self.detect_responses:
                return self.detect_responses.pop(0)
        return {"ok": True, "faces": 0}


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fast_schedule() -> CaptureSchedule:
    return CaptureSchedule(
        ticks=2,
        tick_interval_seconds=0.0,
        detect_start_delay_seconds=0.0,
        detect_max_attempts=3,
        detect_retry_delay_seconds=0.0,
        upload_retry_delay_seconds=0.0,
    )


@pytest.fixture
def frame_source() -> FakeFrameSource:
    return FakeFrameSource()


@pytest.fixture
def make_session(frame_source: FakeFrameSource, fast_schedule: CaptureSchedule):
    sessions: List[Session] = []

    def _make(relay: ScriptedRelay, schedule: Optional[CaptureSchedule] = None, **kwargs: Any) -> Session:
        session = Session(
            frame_source=kwargs.pop("source", frame_source),
            relay=relay,
            schedule=schedule or fast_schedule,
            **kwargs,
        )
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.close()
