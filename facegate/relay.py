from __future__ import annotations

"""Photo-sink and face-analyzer transports behind the local forwarding endpoint.

`ForwardingRelay` is the server side: it talks to Telegram and api4ai and
turns every failure into an `{"ok": false, "error": <code>}` outcome.
`HttpRelayClient` is what a session uses to reach that endpoint over HTTP.
"""

import asyncio
import base64
import concurrent.futures
import logging
import threading
from typing import Any, Dict, Optional

import requests
from telegram import Bot
from telegram.error import TelegramError
from telegram.request import HTTPXRequest

from facegate.errors import (
    ConfigError,
    DeliveryError,
    DetectionError,
    FacegateError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

API4AI_ENDPOINT = "https://api4ai.cloud/face-analyzer/v1/results"
API4AI_DEMO_ENDPOINT = "https://demo.api4ai.cloud/face-analyzer/v1/results"


class TelegramPhotoSink:
    """Delivers photos to one Telegram chat from a dedicated asyncio loop thread."""

    def __init__(self, bot_token: str, chat_id: str, timeout_seconds: float = 60.0) -> None:
        self.enabled = bool(bot_token and chat_id)
        self.chat_id = chat_id
        self.timeout_seconds = timeout_seconds
        self.bot: Optional[Bot] = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._send_lock = threading.Lock()

        if self.enabled:
            request = HTTPXRequest(
                connection_pool_size=8,
                pool_timeout=30.0,
                connect_timeout=10.0,
                read_timeout=30.0,
                write_timeout=30.0,
            )
            self.bot = Bot(token=bot_token, request=request)
            self._loop = asyncio.new_event_loop()
            self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
            self._loop_thread.start()

    def _run_loop(self) -> None:
        if self._loop is None:
            return
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _send_photo_async(self, image_bytes: bytes, caption: str) -> int:
        assert self.bot is not None
        message = await self.bot.send_photo(
            chat_id=self.chat_id,
            photo=image_bytes,
            caption=caption,
            filename=f"{caption}.jpg",
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )
        return int(getattr(message, "message_id", 0) or 0)

    def send_photo(self, image_bytes: bytes, caption: str) -> int:
        """Send one photo; returns the Telegram message id.

        Raises `ConfigError` when the bot is not configured and `DeliveryError`
        on any Telegram or network failure. Retrying is the caller's job.
        """
        if not self.enabled or self._loop is None:
            raise ConfigError("telegram-config-missing")

        with self._send_lock:
            future = asyncio.run_coroutine_threadsafe(
                self._send_photo_async(image_bytes=image_bytes, caption=caption),
                self._loop,
            )
            try:
                return future.result(timeout=self.timeout_seconds)
            except TelegramError as exc:
                raise DeliveryError("telegram-send-failed", detail=str(exc)) from exc
            except concurrent.futures.TimeoutError as exc:
                future.cancel()
                raise DeliveryError("telegram-timeout") from exc

    def close(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=2)


class FaceAnalyzerClient:
    """api4ai face-analyzer client; the demo endpoint needs no key."""

    def __init__(
        self,
        api_key: str,
        use_demo: bool = False,
        timeout_seconds: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.use_demo = use_demo
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return API4AI_DEMO_ENDPOINT if self.use_demo else API4AI_ENDPOINT

    def analyze(self, image_bytes: bytes) -> Dict[str, Any]:
        """Submit one JPEG and return the analyzer's raw JSON document."""
        if not self.use_demo and not self.api_key:
            raise ConfigError("api4ai-key-missing")

        headers: Dict[str, str] = {}
        if not self.use_demo:
            # Both header spellings are accepted by api4ai deployments.
            headers["X-API-KEY"] = self.api_key
            headers["A4A-CLIENT-KEY"] = self.api_key

        try:
            response = self._session.post(
                self.endpoint,
                files={"image": ("frame.jpg", image_bytes, "image/jpeg")},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise DetectionError("api4ai-unreachable", detail=str(exc)) from exc

        if response.status_code == 413:
            raise PayloadTooLargeError()
        if response.status_code >= 400:
            raise DetectionError(f"api4ai-status-{response.status_code}", detail=response.text[:500])
        try:
            return response.json()
        except ValueError as exc:
            raise DetectionError("api4ai-invalid-json") from exc

    def close(self) -> None:
        self._session.close()


class ForwardingRelay:
    """Server-side implementation of the two relay operations."""

    def __init__(
        self,
        photo_sink: TelegramPhotoSink,
        face_analyzer: FaceAnalyzerClient,
        max_payload_bytes: int,
    ) -> None:
        self.photo_sink = photo_sink
        self.face_analyzer = face_analyzer
        self.max_payload_bytes = max_payload_bytes

    def _check_size(self, image_bytes: bytes) -> None:
        if len(image_bytes) > self.max_payload_bytes:
            raise PayloadTooLargeError(detail=f"{len(image_bytes)} > {self.max_payload_bytes} bytes")

    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        try:
            self._check_size(image_bytes)
            message_id = self.photo_sink.send_photo(image_bytes, caption=photo_id)
        except FacegateError as exc:
            logger.warning("Photo %s not delivered: %s", photo_id, exc)
            return {"ok": False, "error": exc.code}
        return {"ok": True, "message_id": message_id}

    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        try:
            self._check_size(image_bytes)
            result = self.face_analyzer.analyze(image_bytes)
        except FacegateError as exc:
            logger.warning("Face analysis failed: %s", exc)
            outcome: Dict[str, Any] = {"ok": False, "error": exc.code}
            if exc.detail:
                outcome["detail"] = exc.detail
            return outcome
        return {"ok": True, "result": result}

    def close(self) -> None:
        self.photo_sink.close()
        self.face_analyzer.close()


class HttpRelayClient:
    """Session-side client of `POST /api/relay`; never raises."""

    def __init__(self, relay_url: str, timeout_seconds: float = 60.0, session: Optional[requests.Session] = None) -> None:
        self.relay_url = relay_url
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._session.post(self.relay_url, json=payload, timeout=self.timeout_seconds)
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            return {"ok": False, "error": str(exc)}
        if not isinstance(body, dict):
            return {"ok": False, "error": "invalid-response"}
        return body

    def deliver_photo(self, image_bytes: bytes, photo_id: str) -> Dict[str, Any]:
        return self._post(
            {
                "action": "send",
                "imageBase64": base64.b64encode(image_bytes).decode("ascii"),
                "id": photo_id,
            }
        )

    def detect_faces(self, image_bytes: bytes) -> Dict[str, Any]:
        return self._post(
            {
                "action": "detect",
                "imageBase64": base64.b64encode(image_bytes).decode("ascii"),
            }
        )

    def close(self) -> None:
        self._session.close()
