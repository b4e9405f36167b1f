from __future__ import annotations

"""Service wiring: camera, relay, session, and the local web server."""

import logging
import threading
from typing import Optional

from facegate.camera import FrameSource, WebcamFrameSource
from facegate.config import Settings
from facegate.detection import DetectionOutcome
from facegate.relay import FaceAnalyzerClient, ForwardingRelay, HttpRelayClient, TelegramPhotoSink
from facegate.session import CaptureSchedule, Session
from facegate.web_ui import start_review_server

logger = logging.getLogger(__name__)


class FacegateApp:
    """Top-level service object owning every long-lived resource."""

    def __init__(self, settings: Settings, frame_source: Optional[FrameSource] = None) -> None:
        self.settings = settings
        self.frame_source = frame_source or WebcamFrameSource(
            device=settings.camera_index,
            first_frame_timeout_seconds=settings.camera_first_frame_timeout_seconds,
        )
        self.relay = ForwardingRelay(
            photo_sink=TelegramPhotoSink(
                bot_token=settings.telegram_bot_token,
                chat_id=settings.telegram_chat_id,
                timeout_seconds=settings.relay_timeout_seconds,
            ),
            face_analyzer=FaceAnalyzerClient(
                api_key=settings.api4ai_key,
                use_demo=settings.use_demo,
                timeout_seconds=settings.relay_timeout_seconds,
            ),
            max_payload_bytes=settings.max_payload_bytes,
        )
        self.relay_client = HttpRelayClient(settings.relay_url, timeout_seconds=settings.relay_timeout_seconds)
        self.session = Session(
            frame_source=self.frame_source,
            relay=self.relay_client,
            schedule=CaptureSchedule.from_settings(settings),
            on_success=self._on_success,
        )
        self.stop_event = threading.Event()
        self.server = None

        if not settings.telegram_configured:
            logger.warning("Telegram not configured; photo deliveries will be retried until configured.")
        if settings.use_demo:
            logger.info("Face analyzer in demo mode (%s)", self.relay.face_analyzer.endpoint)

    def _on_success(self, outcome: DetectionOutcome) -> None:
        logger.info("Face confirmed after %d attempt(s) (faces=%d)", outcome.attempts, outcome.faces)

    def run(self) -> None:
        """Serve until interrupted, then tear down session, server, and transports."""
        self.server, _ = start_review_server(
            host=self.settings.web_host,
            port=self.settings.web_port,
            session=self.session,
            relay=self.relay,
            max_payload_bytes=self.settings.max_payload_bytes,
        )
        logger.info("Review UI: http://%s:%d", self.settings.web_host, self.settings.web_port)
        try:
            while not self.stop_event.is_set():
                self.stop_event.wait(timeout=0.2)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, stopping...")
            self.stop_event.set()
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        self.session.close()
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        self.relay_client.close()
        self.relay.close()
        logger.info("All resources stopped")
