from __future__ import annotations

import base64
import http.client
import json
from typing import Any, Dict
from urllib.parse import urlparse

import pytest
import requests

from conftest import FakeFrameSource, ScriptedRelay

from facegate.session import Session, SessionState
from facegate.web_ui import start_review_server


class RecordingRelay:
    def __init__(self) -> None:
        self.sent: list[tuple[bytes, str]] = []
        self.detect_result: Dict[str, Any] = {"ok": True, "result": {"results": []}}

    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        self.sent.append((image_bytes, photo_id))
        return {"ok": True, "message_id": 1}

    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        return self.detect_result


@pytest.fixture
def relay() -> RecordingRelay:
    return RecordingRelay()


@pytest.fixture
def session(fast_schedule) -> Session:
    session = Session(FakeFrameSource(), ScriptedRelay(detect_responses=[{"faces": 1}]), fast_schedule)
    yield session
    session.close()


@pytest.fixture
def base_url(relay: RecordingRelay, session: Session) -> str:
    server, thread = start_review_server(
        host="127.0.0.1",
        port=0,
        session=session,
        relay=relay,
        max_payload_bytes=256,
    )
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_relay_send_forwards_decoded_image(base_url: str, relay: RecordingRelay) -> None:
    response = requests.post(
        f"{base_url}/api/relay",
        json={"action": "send", "imageBase64": _b64(b"jpeg-bytes"), "id": "abc123"},
        timeout=5,
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True, "message_id": 1}
    assert relay.sent == [(b"jpeg-bytes", "abc123")]
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_relay_detect_failure_is_500(base_url: str, relay: RecordingRelay) -> None:
    relay.detect_result = {"ok": False, "error": "api4ai-key-missing"}
    response = requests.post(f"{base_url}/api/relay", json={"action": "detect", "imageBase64": _b64(b"x")}, timeout=5)
    assert response.status_code == 500
    assert response.json()["error"] == "api4ai-key-missing"


def test_relay_detector_too_large_is_413(base_url: str, relay: RecordingRelay) -> None:
    relay.detect_result = {"ok": False, "error": "request-too-large"}
    response = requests.post(f"{base_url}/api/relay", json={"action": "detect", "imageBase64": _b64(b"x")}, timeout=5)
    assert response.status_code == 413


@pytest.mark.parametrize(
    "payload, error",
    [
        ({}, "missing-action"),
        ({"action": "send", "imageBase64": _b64(b"x")}, "missing-image-or-id"),
        ({"action": "detect"}, "missing-image"),
        ({"action": "detect", "imageBase64": "not base64!"}, "invalid-image"),
        ({"action": "shout", "imageBase64": _b64(b"x")}, "unknown-action"),
    ],
)
def test_relay_validation_errors(base_url: str, payload: Dict[str, Any], error: str) -> None:
    response = requests.post(f"{base_url}/api/relay", json=payload, timeout=5)
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": error}


def test_relay_rejects_invalid_json(base_url: str) -> None:
    response = requests.post(f"{base_url}/api/relay", data=b"{nope", timeout=5)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid-json"


def test_relay_rejects_oversized_body(base_url: str, relay: RecordingRelay) -> None:
    response = requests.post(
        f"{base_url}/api/relay",
        json={"action": "send", "imageBase64": _b64(b"x" * 300), "id": "abc"},
        timeout=5,
    )
    assert response.status_code == 413
    assert response.json() == {"ok": False, "error": "request-too-large"}
    assert relay.sent == []


def test_relay_requires_post(base_url: str) -> None:
    response = requests.get(f"{base_url}/api/relay", timeout=5)
    assert response.status_code == 405
    assert response.json()["error"] == "method-not-allowed"


def test_pages_render(base_url: str) -> None:
    home = requests.get(f"{base_url}/", timeout=5)
    assert home.status_code == 200
    assert "/session/start" in home.text

    review = requests.get(f"{base_url}/review", timeout=5)
    assert review.status_code == 200
    assert "status: idle" in review.text

    assert requests.get(f"{base_url}/success", timeout=5).status_code == 200
    assert requests.get(f"{base_url}/missing", timeout=5).status_code == 404
    assert requests.get(f"{base_url}/live/frame", timeout=5).status_code == 404


def test_session_controls(base_url: str, session: Session) -> None:
    response = requests.post(f"{base_url}/session/start", allow_redirects=False, timeout=5)
    assert response.status_code == 303
    assert response.headers["Location"] == "/review"
    assert session.join(timeout=5)
    assert session.state is SessionState.SUCCESS

    status = requests.get(f"{base_url}/session/status", timeout=5).json()
    assert status["ok"] is True
    assert status["state"] == "success"

    frame = requests.get(f"{base_url}/live/frame", timeout=5)
    assert frame.status_code == 200
    assert frame.headers["Content-Type"] == "image/jpeg"

    review = requests.get(f"{base_url}/review", allow_redirects=False, timeout=5)
    assert "url=/success" in review.text

    reset = requests.post(f"{base_url}/session/reset", allow_redirects=False, timeout=5)
    assert reset.status_code == 303
    assert session.state is SessionState.IDLE


@pytest.mark.parametrize("path", ["/api/relay", "/session/start"])
@pytest.mark.parametrize("content_length", ["abc", "-5"])
def test_unusable_content_length_is_rejected(base_url: str, session: Session, path: str, content_length: str) -> None:
    address = urlparse(base_url)
    conn = http.client.HTTPConnection(address.hostname, address.port, timeout=5)
    try:
        conn.putrequest("POST", path)
        conn.putheader("Content-Length", content_length)
        conn.endheaders()
        response = conn.getresponse()
        body = json.loads(response.read())
    finally:
        conn.close()

    assert response.status == 400
    assert body == {"ok": False, "error": "invalid-content-length"}
    assert session.state is SessionState.IDLE
