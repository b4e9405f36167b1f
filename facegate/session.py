from __future__ import annotations

"""Capture -> detect session controller.

One `Session` owns the camera handle, the upload queue, and the activity log
for a single operator. `start()` spawns a control thread that walks

    idle -> capturing -> detecting -> success | failed

and `stop()`/`reset()` force the session back to idle from any state. Each run
gets its own abort event, so a thread left over from an aborted run can never
move the state of a newer one.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from facegate.activity import ActivityLog
from facegate.camera import CaptureHandle, Frame, FrameSource
from facegate.config import Settings
from facegate.detection import DetectionOutcome, DetectionPoller
from facegate.errors import CameraPermissionError
from facegate.upload_queue import UploadItem, UploadQueue

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DETECTING = "detecting"
    SUCCESS = "success"
    FAILED = "failed"


_FORWARD_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CAPTURING},
    SessionState.CAPTURING: {SessionState.DETECTING},
    SessionState.DETECTING: {SessionState.SUCCESS, SessionState.FAILED},
}

TERMINAL_STATES = {SessionState.SUCCESS, SessionState.FAILED}


class Relay(Protocol):
    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        ...

    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class CaptureSchedule:
    """Timing, attempt budget, and encoding parameters for one run."""

    ticks: int = 15
    tick_interval_seconds: float = 1.0
    detect_start_delay_seconds: float = 0.3
    detect_max_attempts: int = 3
    detect_retry_delay_seconds: float = 0.5
    max_width: int = 900
    quality: float = 0.7
    upload_retry_delay_seconds: float = 1.0
    upload_max_attempts: int = 0
    log_size: int = 300

    @classmethod
    def from_settings(cls, settings: Settings) -> "CaptureSchedule":
        return cls(
            ticks=settings.capture_ticks,
            tick_interval_seconds=settings.capture_interval_seconds,
            detect_start_delay_seconds=settings.detect_start_delay_seconds,
            detect_max_attempts=settings.detect_max_attempts,
            detect_retry_delay_seconds=settings.detect_retry_delay_seconds,
            max_width=settings.capture_max_width,
            quality=settings.capture_quality,
            upload_retry_delay_seconds=settings.upload_retry_delay_seconds,
            upload_max_attempts=settings.upload_max_attempts,
            log_size=settings.activity_log_size,
        )


class Session:
    """Top-level state machine coordinating camera, uploads, and detection."""

    def __init__(
        self,
        frame_source: FrameSource,
        relay: Relay,
        schedule: Optional[CaptureSchedule] = None,
        on_success: Optional[Callable[[DetectionOutcome], None]] = None,
    ) -> None:
        self.frame_source = frame_source
        self.relay = relay
        self.schedule = schedule or CaptureSchedule()
        self.on_success = on_success
        self.log = ActivityLog(max_entries=self.schedule.log_size)
        self.uploads = UploadQueue(
            relay=relay,
            log=self.log,
            retry_delay_seconds=self.schedule.upload_retry_delay_seconds,
            max_attempts=self.schedule.upload_max_attempts,
        )
        self.last_outcome: Optional[DetectionOutcome] = None
        self.detect_attempts = 0
        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._running = False
        self._abort = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._handle: Optional[CaptureHandle] = None
        self._latest_frame: Optional[Frame] = None

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def latest_frame(self) -> Optional[Frame]:
        with self._lock:
            return self._latest_frame

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view used by the status endpoint."""
        with self._lock:
            return {
                "state": self._state.value,
                "running": self._running,
                "detect_attempts": self.detect_attempts,
                "pending_uploads": self.uploads.pending(),
                "logs": self.log.lines(),
            }

    def start(self) -> bool:
        """Begin a run. Returns False if one is already in progress."""
        with self._lock:
            if self._running or self._state not in {SessionState.IDLE, *TERMINAL_STATES}:
                logger.warning("Session start ignored; state=%s", self._state.value)
                return False
            self._state = SessionState.IDLE
            self.log.clear()
            self.detect_attempts = 0
            self.last_outcome = None
            self._latest_frame = None
            self._abort = threading.Event()
            self._running = True
            self._worker = threading.Thread(
                target=self._run,
                args=(self._abort,),
                name="session-control",
                daemon=True,
            )
            self._worker.start()
        return True

    def stop(self, timeout: float = 2.0) -> None:
        """Abort future work, release the camera, and force the state to idle.

        Requests already in flight are not interrupted; their results are
        ignored when they complete.
        """
        with self._lock:
            self._abort.set()
            was_active = self._running or self._state is not SessionState.IDLE
            self._release_camera()
            if self._state is not SessionState.IDLE:
                logger.info("Session state %s -> %s", self._state.value, SessionState.IDLE.value)
            self._state = SessionState.IDLE
            self._running = False
            worker = self._worker
            self._worker = None
        if was_active:
            self.log.add("stopped")
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)

    def reset(self) -> None:
        self.stop()
        with self._lock:
            self.detect_attempts = 0
            self.last_outcome = None

    def close(self) -> None:
        """Teardown: stop the run and shut the upload consumer down."""
        self.stop()
        self.uploads.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current control thread; True once it has finished."""
        with self._lock:
            worker = self._worker
        if worker is None:
            return True
        worker.join(timeout=timeout)
        return not worker.is_alive()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _transition(self, abort: threading.Event, new_state: SessionState) -> bool:
        with self._lock:
            if abort.is_set():
                return False
            if new_state not in _FORWARD_TRANSITIONS.get(self._state, set()):
                raise RuntimeError(f"invalid session transition {self._state.value} -> {new_state.value}")
            logger.info("Session state %s -> %s", self._state.value, new_state.value)
            self._state = new_state
            return True

    def _release_camera(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is not None:
            self.frame_source.release(handle)

    def _finish(self, abort: threading.Event) -> None:
        with self._lock:
            if not abort.is_set():
                self._running = False
                self._worker = None

    def _run(self, abort: threading.Event) -> None:
        try:
            self._run_phases(abort)
        except Exception:
            logger.exception("Session control loop failed")
            with self._lock:
                if not abort.is_set():
                    self.log.add("session error")
                    self._release_camera()
                    self._state = SessionState.IDLE
        finally:
            self._finish(abort)

    def _run_phases(self, abort: threading.Event) -> None:
        try:
            handle = self.frame_source.acquire()
        except CameraPermissionError as exc:
            logger.warning("Camera unavailable: %s", exc)
            if not abort.is_set():
                self.log.add("camera not permitted")
            return

        with self._lock:
            if abort.is_set():
                self.frame_source.release(handle)
                return
            self._handle = handle
        if not self._transition(abort, SessionState.CAPTURING):
            return
        self.log.add("capturing")

        if not self._capture_phase(abort, handle):
            return
        if abort.wait(self.schedule.detect_start_delay_seconds):
            return
        if not self._transition(abort, SessionState.DETECTING):
            return
        self.log.add("checking...")

        poller = DetectionPoller(
            relay=self.relay,
            log=self.log,
            abort=abort,
            retry_delay_seconds=self.schedule.detect_retry_delay_seconds,
            max_width=self.schedule.max_width,
            quality=self.schedule.quality,
        )
        outcome = poller.run_detection_cycle(self.frame_source, handle, self.schedule.detect_max_attempts)

        with self._lock:
            if abort.is_set():
                return
            self.detect_attempts = outcome.attempts
            self.last_outcome = outcome
            self._release_camera()
            if outcome.succeeded:
                self._transition(abort, SessionState.SUCCESS)
            else:
                self._transition(abort, SessionState.FAILED)
                self.log.add(f"no face after {outcome.attempts} attempts, try again")

        if outcome.succeeded and self.on_success is not None:
            try:
                self.on_success(outcome)
            except Exception:
                logger.exception("Success callback failed")

    def _capture_phase(self, abort: threading.Event, handle: CaptureHandle) -> bool:
        """Capture one frame per tick and queue it for delivery."""
        started = time.monotonic()
        interval = self.schedule.tick_interval_seconds
        for tick in range(1, self.schedule.ticks + 1):
            # Ticks are anchored to the phase start so a slow capture does not shift the cadence.
            if abort.wait(max(0.0, started + tick * interval - time.monotonic())):
                return False
            frame = self.frame_source.capture_frame(handle, self.schedule.max_width, self.schedule.quality)
            if frame is None:
                self.log.add(f"tick {tick}: frame not ready")
                continue
            item = UploadItem(payload=frame)
            with self._lock:
                if abort.is_set():
                    return False
                self._latest_frame = frame
            self.uploads.enqueue(item)
            self.log.add(f"captured: {item.id}")
        return not abort.is_set()
