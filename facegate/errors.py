from __future__ import annotations

"""Error taxonomy shared by the capture, upload, and detection layers."""

from typing import Optional


class FacegateError(Exception):
    """Base error carrying a stable machine-readable `code`."""

    code = "facegate-error"

    def __init__(self, code: Optional[str] = None, detail: str = "") -> None:
        self.code = code or type(self).code
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class CameraPermissionError(FacegateError):
    """Camera access denied or no capture device available."""

    code = "camera-permission-denied"


class TransientCaptureError(FacegateError):
    """No decoded frame is available yet; skip this tick."""

    code = "frame-not-ready"


class DeliveryError(FacegateError):
    """Photo sink rejected the upload or could not be reached."""

    code = "delivery-failed"


class DetectionError(FacegateError):
    """Face analyzer call failed."""

    code = "detection-failed"


class ConfigError(FacegateError):
    """Credentials required by an external operation are missing."""

    code = "config-missing"


class PayloadTooLargeError(FacegateError):
    code = "request-too-large"
