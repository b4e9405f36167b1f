from __future__ import annotations

"""Configuration loading for the capture/detect service.

Values come from the environment first, then the local `.secrets` file, then
defaults. Credentials are optional at load time: the relay operation that
needs them fails with `ConfigError` when it is invoked.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

DEFAULT_MAX_PAYLOAD_BYTES = 32 * 1024 * 1024


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    Blank lines and `#` comments are skipped; surrounding whitespace and
    single or double wrapping quotes are stripped.
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    telegram_bot_token: str
    telegram_chat_id: str
    api4ai_key: str
    use_demo: bool
    camera_index: int
    camera_first_frame_timeout_seconds: float
    capture_ticks: int
    capture_interval_seconds: float
    capture_max_width: int
    capture_quality: float
    detect_start_delay_seconds: float
    detect_max_attempts: int
    detect_retry_delay_seconds: float
    upload_retry_delay_seconds: float
    upload_max_attempts: int
    activity_log_size: int
    relay_timeout_seconds: float
    max_payload_bytes: int
    web_host: str
    web_port: int
    relay_url: str

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    Malformed numbers raise `ValueError`; out-of-range tuning values raise
    `ValueError` with the offending key in the message.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    web_host = _get_env("WEB_HOST", file_values, "127.0.0.1")
    web_port = int(_get_env("WEB_PORT", file_values, "8765"))
    relay_url = _get_env("RELAY_URL", file_values) or f"http://127.0.0.1:{web_port}/api/relay"

    settings = Settings(
        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", file_values),
        telegram_chat_id=_get_env("TELEGRAM_CHAT_ID", file_values),
        api4ai_key=_get_env("API4AI_KEY", file_values),
        use_demo=_parse_bool(_get_env("USE_DEMO", file_values, "false")),
        camera_index=int(_get_env("CAMERA_INDEX", file_values, "0")),
        camera_first_frame_timeout_seconds=float(
            _get_env("CAMERA_FIRST_FRAME_TIMEOUT_SECONDS", file_values, "0.8")
        ),
        capture_ticks=int(_get_env("CAPTURE_TICKS", file_values, "15")),
        capture_interval_seconds=float(_get_env("CAPTURE_INTERVAL_SECONDS", file_values, "1.0")),
        capture_max_width=int(_get_env("CAPTURE_MAX_WIDTH", file_values, "900")),
        capture_quality=float(_get_env("CAPTURE_QUALITY", file_values, "0.7")),
        detect_start_delay_seconds=float(_get_env("DETECT_START_DELAY_SECONDS", file_values, "0.3")),
        detect_max_attempts=int(_get_env("DETECT_MAX_ATTEMPTS", file_values, "3")),
        detect_retry_delay_seconds=float(_get_env("DETECT_RETRY_DELAY_SECONDS", file_values, "0.5")),
        upload_retry_delay_seconds=float(_get_env("UPLOAD_RETRY_DELAY_SECONDS", file_values, "1.0")),
        upload_max_attempts=int(_get_env("UPLOAD_MAX_ATTEMPTS", file_values, "0")),
        activity_log_size=int(_get_env("ACTIVITY_LOG_SIZE", file_values, "300")),
        relay_timeout_seconds=float(_get_env("RELAY_TIMEOUT_SECONDS", file_values, "60")),
        max_payload_bytes=int(_get_env("MAX_PAYLOAD_BYTES", file_values, str(DEFAULT_MAX_PAYLOAD_BYTES))),
        web_host=web_host,
        web_port=web_port,
        relay_url=relay_url,
    )
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    if settings.capture_ticks < 1:
        raise ValueError("CAPTURE_TICKS must be >= 1")
    if settings.capture_max_width < 1:
        raise ValueError("CAPTURE_MAX_WIDTH must be >= 1")
    if not 0.0 < settings.capture_quality <= 1.0:
        raise ValueError("CAPTURE_QUALITY must be in (0, 1]")
    if settings.detect_max_attempts < 1:
        raise ValueError("DETECT_MAX_ATTEMPTS must be >= 1")
    if settings.upload_max_attempts < 0:
        raise ValueError("UPLOAD_MAX_ATTEMPTS must be >= 0 (0 = unlimited)")
    if settings.activity_log_size < 1:
        raise ValueError("ACTIVITY_LOG_SIZE must be >= 1")
    if settings.max_payload_bytes < 1:
        raise ValueError("MAX_PAYLOAD_BYTES must be >= 1")
