from __future__ import annotations

"""Local web UI and request-forwarding endpoint.

Pages: start (`/`), review (`/review`), success (`/success`). The browser never
talks to Telegram or api4ai directly; `POST /api/relay` forwards both
operations through a `ForwardingRelay`.
"""

import base64
import binascii
import html
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from facegate.config import DEFAULT_MAX_PAYLOAD_BYTES
from facegate.relay import ForwardingRelay
from facegate.session import Session, SessionState

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer-when-downgrade",
}

PAGE_STYLE = """
body { margin: 0; min-height: 100vh; background: #0b1220; color: #e6eef8; font-family: sans-serif; }
.wrap { display: flex; justify-content: center; align-items: center; min-height: 100vh; padding: 20px; }
.card { text-align: center; background: rgba(255,255,255,0.05); padding: 28px; border-radius: 12px; max-width: 420px; width: 100%; }
.btn { padding: 10px 16px; background: #06b6d4; border: 0; border-radius: 8px; font-weight: 700; cursor: pointer; }
.review { display: flex; gap: 16px; flex-wrap: wrap; padding: 16px; }
.preview { flex: 1; min-width: 260px; }
.preview img { width: 100%; max-height: 320px; object-fit: cover; background: #000; border-radius: 8px; }
.logs { width: 360px; background: #07101f; padding: 10px; height: 420px; overflow-y: auto; border-radius: 8px; font-family: monospace; font-size: 13px; }
.logs div { padding: 4px 0; border-bottom: 1px dashed #102129; }
form { display: inline-block; margin-right: 8px; }
"""


def _page(title: str, body: str, refresh: Optional[str] = None) -> str:
    meta = f'<meta http-equiv="refresh" content="{refresh}">' if refresh else ""
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<title>{html.escape(title)}</title>{meta}<style>{PAGE_STYLE}</style></head>"
        f"<body>{body}</body></html>"
    )


class ReviewHandler(BaseHTTPRequestHandler):
    """HTTP handler for the review pages, session controls, and relay endpoint."""

    session: Optional[Session] = None
    relay: Optional[ForwardingRelay] = None
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_headers(self, status: int, content_type: str, length: int) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(length))
        for key, value in SECURITY_HEADERS.items():
            self.send_header(key, value)
        self.end_headers()

    def _send_html(self, body: str, status: int = 200) -> None:
        data = body.encode("utf-8")
        self._send_headers(status, "text/html; charset=utf-8", len(data))
        self.wfile.write(data)

    def _send_json(self, payload: Dict[str, Any], status: int = 200) -> None:
        data = json.dumps(payload).encode("utf-8")
        self._send_headers(status, "application/json", len(data))
        self.wfile.write(data)

    def _send_binary(self, payload: bytes, content_type: str) -> None:
        self._send_headers(200, content_type, len(payload))
        self.wfile.write(payload)

    def _redirect(self, location: str) -> None:
        self.send_response(303)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _render_root(self) -> str:
        return _page(
            "Camera monitoring",
            "<main class='wrap'><div class='card'>"
            "<h1>Camera monitoring</h1>"
            "<p>Press start to begin monitoring and face detection.</p>"
            "<form method='post' action='/session/start'><button class='btn'>Start</button></form>"
            "</div></main>",
        )

    def _render_review(self) -> str:
        session = self.session
        if session is None:
            return _page("Review", "<main class='wrap'><div class='card'>No session configured.</div></main>")

        state = session.state
        if state is SessionState.SUCCESS:
            refresh: Optional[str] = "0; url=/success"
        elif session.running:
            refresh = "1"
        else:
            refresh = None

        if session.running:
            controls = (
                f"<div>status: {html.escape(state.value)}</div>"
                "<form method='post' action='/session/stop'><button class='btn'>STOP</button></form>"
            )
        else:
            controls = (
                f"<div>status: {html.escape(state.value)}</div>"
                "<form method='post' action='/session/start'><button class='btn'>START</button></form>"
                "<form method='post' action='/session/reset'><button class='btn'>RESET</button></form>"
            )
        preview = "<img src='/live/frame' alt='latest frame'>" if session.latest_frame() is not None else ""
        log_rows = "".join(f"<div>{html.escape(line)}</div>" for line in session.log.lines())
        body = (
            "<main class='review'>"
            f"<div class='preview'>{preview}<div style='margin-top:12px'>{controls}</div></div>"
            f"<div class='logs'>{log_rows}</div>"
            "</main>"
        )
        return _page("Review", body, refresh=refresh)

    def _render_success(self) -> str:
        return _page(
            "Success",
            "<main class='wrap'><div class='card'>"
            "<h1>Face detected</h1><p>Verification completed.</p>"
            "<form method='post' action='/session/reset'><button class='btn'>Back</button></form>"
            "</div></main>",
        )

    def do_GET(self) -> None:
        """Handle HTTP GET routes."""
        parsed = urlparse(self.path)

        if parsed.path == "/":
            self._send_html(self._render_root())
            return

        if parsed.path == "/review":
            self._send_html(self._render_review())
            return

        if parsed.path == "/success":
            self._send_html(self._render_success())
            return

        if parsed.path == "/session/status":
            if self.session is None:
                self._send_json({"ok": False, "error": "no-session"}, status=503)
                return
            self._send_json({"ok": True, **self.session.snapshot()})
            return

        if parsed.path == "/live/frame":
            frame = self.session.latest_frame() if self.session is not None else None
            if frame is None:
                self.send_error(404, "No frame captured yet")
                return
            self._send_binary(frame.data, "image/jpeg")
            return

        if parsed.path == "/api/relay":
            self._send_json({"ok": False, "error": "method-not-allowed"}, status=405)
            return

        self.send_error(404, "Not found")

    def do_POST(self) -> None:
        """Handle session controls and the relay endpoint."""
        parsed = urlparse(self.path)

        if parsed.path == "/api/relay":
            self._handle_relay()
            return

        if parsed.path in {"/session/start", "/session/stop", "/session/reset"}:
            length = self._content_length()
            if length is None:
                return
            if length:
                self.rfile.read(length)
            if self.session is None:
                self.send_error(503, "No session configured")
                return
            if parsed.path == "/session/start":
                self.session.start()
                self._redirect("/review")
            elif parsed.path == "/session/stop":
                self.session.stop()
                self._redirect("/review")
            else:
                self.session.reset()
                self._redirect("/")
            return

        self.send_error(404, "Not found")

    def do_PUT(self) -> None:
        self._method_not_allowed()

    def do_DELETE(self) -> None:
        self._method_not_allowed()

    def _method_not_allowed(self) -> None:
        if urlparse(self.path).path == "/api/relay":
            self._send_json({"ok": False, "error": "method-not-allowed"}, status=405)
            return
        self.send_error(405, "Method not allowed")

    def _content_length(self) -> Optional[int]:
        """Parse Content-Length; answers 400 and returns None when it is unusable."""
        raw = (self.headers.get("Content-Length") or "0").strip()
        try:
            length = int(raw)
        except ValueError:
            length = -1
        if length < 0:
            self._send_json({"ok": False, "error": "invalid-content-length"}, status=400)
            return None
        return length

    def _handle_relay(self) -> None:
        length = self._content_length()
        if length is None:
            return
        if length > self.max_payload_bytes:
            # Drain the body so the client sees the 413 instead of a reset connection.
            remaining = length
            while remaining > 0:
                chunk = self.rfile.read(min(remaining, 64 * 1024))
                if not chunk:
                    break
                remaining -= len(chunk)
            self._send_json({"ok": False, "error": "request-too-large"}, status=413)
            return
        raw = self.rfile.read(length) if length else b""
        try:
            payload = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._send_json({"ok": False, "error": "invalid-json"}, status=400)
            return
        if not isinstance(payload, dict):
            self._send_json({"ok": False, "error": "invalid-json"}, status=400)
            return
        if self.relay is None:
            self._send_json({"ok": False, "error": "relay-not-configured"}, status=503)
            return

        action = payload.get("action")
        image_b64 = payload.get("imageBase64")
        photo_id = payload.get("id")
        if not action:
            self._send_json({"ok": False, "error": "missing-action"}, status=400)
            return

        if action == "send":
            if not image_b64 or not photo_id:
                self._send_json({"ok": False, "error": "missing-image-or-id"}, status=400)
                return
            image_bytes = self._decode_image(image_b64)
            if image_bytes is None:
                return
            self._send_outcome(self.relay.deliver_photo(image_bytes, str(photo_id)))
            return

        if action == "detect":
            if not image_b64:
                self._send_json({"ok": False, "error": "missing-image"}, status=400)
                return
            image_bytes = self._decode_image(image_b64)
            if image_bytes is None:
                return
            self._send_outcome(self.relay.detect_faces(image_bytes))
            return

        self._send_json({"ok": False, "error": "unknown-action"}, status=400)

    def _decode_image(self, image_b64: Any) -> Optional[bytes]:
        try:
            return base64.b64decode(str(image_b64), validate=True)
        except (binascii.Error, ValueError):
            self._send_json({"ok": False, "error": "invalid-image"}, status=400)
            return None

    def _send_outcome(self, outcome: Dict[str, Any]) -> None:
        if outcome.get("ok"):
            status = 200
        elif outcome.get("error") == "request-too-large":
            status = 413
        else:
            status = 500
        self._send_json(outcome, status=status)


def create_review_server(
    *,
    host: str,
    port: int,
    session: Optional[Session],
    relay: Optional[ForwardingRelay],
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
) -> ThreadingHTTPServer:
    """Create a server bound to its own handler subclass."""
    handler = type(
        "BoundReviewHandler",
        (ReviewHandler,),
        {"session": session, "relay": relay, "max_payload_bytes": max_payload_bytes},
    )
    return ThreadingHTTPServer((host, port), handler)


def start_review_server(
    *,
    host: str,
    port: int,
    session: Optional[Session],
    relay: Optional[ForwardingRelay],
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
) -> tuple[ThreadingHTTPServer, threading.Thread]:
    """Create and start the server in a background thread."""
    server = create_review_server(
        host=host,
        port=port,
        session=session,
        relay=relay,
        max_payload_bytes=max_payload_bytes,
    )
    thread = threading.Thread(target=server.serve_forever, name="review-server", daemon=True)
    thread.start()
    return server, thread
