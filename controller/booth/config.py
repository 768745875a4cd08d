"""Central configuration for the photo booth station controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class CaptureTimings(BaseModel):
    """Countdown, cooldown and multi-shot timing (seconds)."""
    countdown_ticks: int = Field(3, ge=1, description="Number of countdown ticks before the shutter fires")
    tick_seconds: float = Field(1.0, gt=0, description="Interval between countdown ticks")
    cooldown_seconds: float = Field(1.5, ge=0, description="'Just captured' settle period before returning to idle")
    multi_capture_settle_seconds: float = Field(1.8, ge=0, description="Pause between shots of a multi-shot batch")
    multi_capture_default_count: int = Field(3, ge=1, description="Photos per multi-shot batch when not specified")
    multi_capture_max_count: int = Field(10, ge=1, description="Upper bound accepted for a multi-shot batch")


class SessionTimings(BaseModel):
    """Session lifecycle timing (seconds)."""
    renewal_delay_seconds: float = Field(1.0, ge=0, description="Delay before a fresh session is requested after teardown")
    inactivity_timeout_seconds: float = Field(300.0, gt=0, description="Session expires after this long without activity")
    expiry_check_seconds: float = Field(5.0, gt=0, description="How often the expiry watchdog looks at the session")


class CameraSettings(BaseModel):
    """Webcam hardware and encoding configuration."""
    camera_id: int = Field(0, description="OpenCV device index")
    resolution_width: int = Field(1280, description="Requested capture width (pixels)")
    resolution_height: int = Field(720, description="Requested capture height (pixels)")
    jpeg_quality: int = Field(80, ge=1, le=100, description="JPEG quality for raw (un-framed) captures")
    warmup_frames: int = Field(2, ge=0, description="Frames discarded after opening the device")
    overlay_path: Optional[Path] = Field(None, description="PNG frame composited over every capture (alpha respected)")


class PerformanceSettings(BaseModel):
    """Queue tuning."""
    ui_event_queue_size: int = Field(16, description="Max buffered UI events per subscriber")


class Settings(BaseSettings):
    """Environment-driven settings for station subsystems."""

    # Backend & API
    registry_api_url: str = Field(
        "https://backend-photobooth-production.up.railway.app",
        description="Session registry REST base URL",
    )
    relay_ws_url: str = Field(
        "wss://backend-photobooth-production.up.railway.app/ws",
        description="Relay channel WebSocket URL",
    )
    pairing_base_url: Optional[str] = Field(
        None, description="Base URL for pairing links when the registry omits qr_data"
    )
    registry_timeout_seconds: float = Field(15.0, description="HTTP timeout for registry calls")

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    capture: CaptureTimings = Field(default_factory=CaptureTimings, description="Capture sequence timing")
    session: SessionTimings = Field(default_factory=SessionTimings, description="Session lifecycle timing")
    camera: CameraSettings = Field(default_factory=CameraSettings, description="Camera settings")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
