from __future__ import annotations

import threading

from conftest import FakeFrameSource, ScriptedRelay

from facegate.activity import ActivityLog
from facegate.detection import DetectionPoller, OutcomeKind


def _poller(relay: ScriptedRelay, delay: float = 0.0, abort: threading.Event | None = None) -> DetectionPoller:
    return DetectionPoller(relay=relay, log=ActivityLog(), abort=abort or threading.Event(), retry_delay_seconds=delay)


def test_first_positive_attempt_succeeds() -> None:
    source = FakeFrameSource()
    relay = ScriptedRelay(detect_responses=[{"ok": True, "faces": 1}])
    outcome = _poller(relay).run_detection_cycle(source, source.acquire(), max_attempts=3)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.attempts == 1
    assert outcome.faces == 1
    assert outcome.frame is not None
    assert len(relay.detect_times) == 1


def test_failures_and_zero_counts_consume_budget() -> None:
    source = FakeFrameSource()
    relay = ScriptedRelay(
        detect_responses=[
            {"ok": False, "error": "api4ai-status-500"},
            {"ok": True, "faces": 0},
            {"ok": True, "result": {"results": [{"entities": []}]}},
        ]
    )
    poller = _poller(relay)
    outcome = poller.run_detection_cycle(source, source.acquire(), max_attempts=3)

    assert outcome.kind is OutcomeKind.EXHAUSTED
    assert outcome.attempts == 3
    assert [attempt.attempt_number for attempt in poller.history] == [1, 2, 3]
    lines = poller.log.lines()
    assert "detection failed: api4ai-status-500" in lines
    assert lines.count("no face detected") == 2


def test_success_on_later_attempt() -> None:
    source = FakeFrameSource()
    relay = ScriptedRelay(detect_responses=[{"ok": True, "faces": 0}, {"faces": 2}])
    outcome = _poller(relay).run_detection_cycle(source, source.acquire(), max_attempts=3)
    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.attempts == 2


def test_attempts_are_separated_by_delay() -> None:
    source = FakeFrameSource()
    relay = ScriptedRelay()
    outcome = _poller(relay, delay=0.05).run_detection_cycle(source, source.acquire(), max_attempts=3)

    assert outcome.kind is OutcomeKind.EXHAUSTED
    gaps = [later - earlier for earlier, later in zip(relay.detect_times, relay.detect_times[1:])]
    assert len(gaps) == 2
    assert all(gap >= 0.045 for gap in gaps)


def test_missing_frame_counts_as_attempt() -> None:
    source = FakeFrameSource(frames_ready=False)
    relay = ScriptedRelay()
    poller = _poller(relay)
    outcome = poller.run_detection_cycle(source, source.acquire(), max_attempts=2)

    assert outcome.kind is OutcomeKind.EXHAUSTED
    assert outcome.attempts == 2
    assert relay.detect_times == []
    assert poller.log.lines().count("no frame available") == 2


def test_abort_before_start_cancels() -> None:
    source = FakeFrameSource()
    abort = threading.Event()
    abort.set()
    relay = ScriptedRelay()
    outcome = _poller(relay, abort=abort).run_detection_cycle(source, source.acquire())
    assert outcome.kind is OutcomeKind.CANCELLED
    assert outcome.attempts == 0
    assert relay.detect_times == []


def test_response_after_abort_is_discarded() -> None:
    source = FakeFrameSource()
    abort = threading.Event()

    class AbortingRelay(ScriptedRelay):
        def detect_faces(self, image_bytes: bytes):
            abort.set()
            return {"ok": True, "faces": 5}

    outcome = _poller(AbortingRelay(), abort=abort).run_detection_cycle(source, source.acquire())
    assert outcome.kind is OutcomeKind.CANCELLED
    assert outcome.attempts == 1
