from __future__ import annotations

"""Serialized at-least-once delivery of captured frames to the photo sink."""

import logging
import secrets
import string
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from facegate.activity import ActivityLog
from facegate.camera import Frame

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_lowercase + string.digits

# Recent delivered/dropped ids kept for inspection.
OUTCOME_HISTORY = 256


def make_id(length: int = 24) -> str:
    """Random opaque correlation token (lowercase alphanumeric)."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


class PhotoRelay(Protocol):
    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        ...


@dataclass
class UploadItem:
    """One captured frame waiting for delivery; `id` is for log correlation only."""

    payload: Frame
    id: str = field(default_factory=make_id)
    attempts: int = 0


class UploadQueue:
    """Single-consumer queue that re-appends failed items to the tail.

    The consumer thread starts on demand and exits once the queue drains, so
    at most one send is ever in flight. `max_attempts=0` retries forever.
    """

    def __init__(
        self,
        relay: PhotoRelay,
        log: ActivityLog,
        retry_delay_seconds: float = 0.0,
        max_attempts: int = 0,
    ) -> None:
        self.relay = relay
        self.log = log
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts
        self._items: deque[UploadItem] = deque()
        self._cond = threading.Condition()
        self._worker: Optional[threading.Thread] = None
        self._in_flight: Optional[UploadItem] = None
        self._closed = threading.Event()
        self.delivered: deque[str] = deque(maxlen=OUTCOME_HISTORY)
        self.dropped: deque[str] = deque(maxlen=OUTCOME_HISTORY)

    def enqueue(self, item: UploadItem) -> None:
        """Append `item` and start draining if the consumer is idle."""
        with self._cond:
            if self._closed.is_set():
                self._drop(item, reason="queue closed")
                return
            self._items.append(item)
            if self._worker is None:
                self._worker = threading.Thread(target=self._drain, name="upload-queue", daemon=True)
                self._worker.start()
            self._cond.notify_all()

    def pending(self) -> int:
        with self._cond:
            return len(self._items) + (1 if self._in_flight is not None else 0)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and nothing is in flight."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._items and self._worker is None, timeout=timeout)

    def close(self, timeout: float = 2.0) -> None:
        """Stop draining; items still queued are dropped and logged."""
        with self._cond:
            self._closed.set()
            while self._items:
                self._drop(self._items.popleft(), reason="queue closed")
            worker = self._worker
            self._cond.notify_all()
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)

    def _deliver(self, item: UploadItem) -> None:
        self.delivered.append(item.id)
        self.log.add(f"id: {item.id}")

    def _drop(self, item: UploadItem, reason: str) -> None:
        self.dropped.append(item.id)
        self.log.add(f"id: {item.id} (dropped)")
        logger.warning("Upload %s dropped after %d attempt(s): %s", item.id, item.attempts, reason)

    def _drain(self) -> None:
        while True:
            with self._cond:
                if self._closed.is_set() or not self._items:
                    self._worker = None
                    self._cond.notify_all()
                    return
                item = self._items.popleft()
                self._in_flight = item

            ok = self._send(item)

            with self._cond:
                self._in_flight = None
                item.attempts += 1
                if self._closed.is_set():
                    # A send that finishes after close is recorded but never retried.
                    if ok:
                        self._deliver(item)
                    else:
                        self._drop(item, reason="queue closed")
                    self._worker = None
                    self._cond.notify_all()
                    return
                if ok:
                    self._deliver(item)
                elif self.max_attempts and item.attempts >= self.max_attempts:
                    self._drop(item, reason="retry budget exhausted")
                else:
                    self.log.add(f"id: {item.id} (retry)")
                    self._items.append(item)
                self._cond.notify_all()

            if not ok and self.retry_delay_seconds > 0:
                self._closed.wait(self.retry_delay_seconds)

    def _send(self, item: UploadItem) -> bool:
        try:
            response = self.relay.deliver_photo(item.payload.data, item.id)
        except Exception:
            logger.exception("Upload %s raised", item.id)
            return False
        if not response.get("ok"):
            logger.warning("Upload %s failed: %s", item.id, response.get("error"))
            return False
        return True
