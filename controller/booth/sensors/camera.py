"""
Webcam capture engine for the photo booth station.
Owns the OpenCV device while a remote is paired and turns a live frame into
an encoded still, optionally composited with a static PNG frame.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import numpy as np

# Optional deps
try:
    import cv2  # type: ignore
except ImportError:
    cv2 = None


logger = logging.getLogger(__name__)

CaptureFactory = Callable[[int], Any]


class DeviceUnavailableError(RuntimeError):
    """Raised when the webcam cannot be opened or stops delivering frames."""


@dataclass
class CapturedImage:
    """Encoded still held in memory for preview, download and relay delivery."""

    data: bytes
    mime_type: str
    width: int
    height: int
    composited: bool = False
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_data_url(cls, data_url: str) -> "CapturedImage":
        """Decode a ``data:<mime>;base64,...`` URL as received over the relay."""
        header, sep, payload = data_url.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise ValueError("not a base64 data URL")
        mime_type = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
        data = base64.b64decode(payload, validate=True)
        return cls(data=data, mime_type=mime_type, width=0, height=0, composited=mime_type == "image/png")


def composite_overlay(frame: np.ndarray, overlay: np.ndarray) -> np.ndarray:
    """Draw ``overlay`` over ``frame`` stretched to the frame size.

    A 4-channel overlay is alpha blended; a 3-channel one replaces the frame
    wherever it is not pure black.
    """
    if cv2 is None:
        raise DeviceUnavailableError("OpenCV not available")
    h, w = frame.shape[:2]
    if overlay.shape[:2] != (h, w):
        overlay = cv2.resize(overlay, (w, h), interpolation=cv2.INTER_AREA)

    base = frame.astype(np.float32)
    if overlay.ndim == 3 and overlay.shape[2] == 4:
        alpha = overlay[:, :, 3:4].astype(np.float32) / 255.0
        colour = overlay[:, :, :3].astype(np.float32)
        blended = colour * alpha + base * (1.0 - alpha)
        return np.clip(blended, 0, 255).astype(np.uint8)

    mask = np.any(overlay[:, :, :3] > 0, axis=2, keepdims=True)
    return np.where(mask, overlay[:, :, :3], frame).astype(np.uint8)


class CaptureEngine:
    """Exclusive owner of the webcam for one paired session."""

    def __init__(
        self,
        camera_id: int = 0,
        *,
        width: int = 1280,
        height: int = 720,
        jpeg_quality: int = 80,
        warmup_frames: int = 0,
        overlay_path: Optional[Path] = None,
        capture_factory: Optional[CaptureFactory] = None,
    ) -> None:
        self.camera_id = camera_id
        self.width = width
        self.height = height
        self.jpeg_quality = jpeg_quality
        self.warmup_frames = warmup_frames
        self.overlay_path = overlay_path
        self.enable_hardware = cv2 is not None
        self._capture_factory = capture_factory
        self._cap: Any = None
        self._overlay: Optional[np.ndarray] = None
        self._overlay_loaded = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings) -> "CaptureEngine":
        cam = settings.camera
        return cls(
            cam.camera_id,
            width=cam.resolution_width,
            height=cam.resolution_height,
            jpeg_quality=cam.jpeg_quality,
            warmup_frames=cam.warmup_frames,
            overlay_path=cam.overlay_path,
        )

    @property
    def is_active(self) -> bool:
        return self._cap is not None

    async def acquire(self) -> None:
        """Open the webcam; a no-op when already open."""
        async with self._lock:
            await self._acquire_locked()

    async def release(self) -> None:
        """Close the webcam; a no-op when already closed."""
        async with self._lock:
            self._release_locked()

    async def reinitialize(self) -> None:
        """Release and re-open the device (one recovery attempt)."""
        async with self._lock:
            self._release_locked()
            await self._acquire_locked()

    async def capture_still(self) -> CapturedImage:
        """Grab one frame and encode it, compositing the overlay when configured."""
        async with self._lock:
            if self._cap is None:
                raise DeviceUnavailableError("Webcam not available")
            loop = asyncio.get_running_loop()
            frame = await loop.run_in_executor(None, self._read_frame)
            if frame is None:
                raise DeviceUnavailableError("Webcam returned no frame")
            overlay = await loop.run_in_executor(None, self._load_overlay)
            return await loop.run_in_executor(None, self._encode, frame, overlay)

    async def _acquire_locked(self) -> None:
        if self._cap is not None:
            return
        if not self.enable_hardware and self._capture_factory is None:
            raise DeviceUnavailableError("OpenCV not available - webcam disabled")

        logger.info(f"Opening webcam (camera_id={self.camera_id})")
        loop = asyncio.get_running_loop()
        cap = await loop.run_in_executor(None, self._open_device)
        if cap is None:
            raise DeviceUnavailableError(f"Failed to open webcam {self.camera_id}")
        self._cap = cap
        logger.info("Webcam activated successfully")

    def _release_locked(self) -> None:
        if self._cap is None:
            return
        logger.info("Closing webcam")
        try:
            self._cap.release()
        except Exception as e:
            logger.warning(f"Error releasing webcam: {e}")
        self._cap = None
        logger.info("Webcam deactivated")

    def _open_device(self) -> Any:
        factory = self._capture_factory or cv2.VideoCapture
        cap = factory(self.camera_id)
        if not cap.isOpened():
            cap.release()
            return None
        if cv2 is not None:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        for _ in range(self.warmup_frames):
            cap.read()
        return cap

    def _read_frame(self) -> Optional[np.ndarray]:
        cap = self._cap
        if cap is None or not cap.isOpened():
            return None
        ret, frame = cap.read()
        if not ret or frame is None:
            return None
        return frame

    def _load_overlay(self) -> Optional[np.ndarray]:
        if self._overlay_loaded:
            return self._overlay
        self._overlay_loaded = True
        if not self.overlay_path or cv2 is None:
            return None
        overlay = cv2.imread(str(self.overlay_path), cv2.IMREAD_UNCHANGED)
        if overlay is None:
            logger.warning(f"Overlay image not readable: {self.overlay_path}")
            return None
        if overlay.ndim == 2:
            overlay = cv2.cvtColor(overlay, cv2.COLOR_GRAY2BGR)
        self._overlay = overlay
        logger.info(f"Loaded capture overlay {self.overlay_path} ({overlay.shape[1]}x{overlay.shape[0]})")
        return overlay

    def _encode(self, frame: np.ndarray, overlay: Optional[np.ndarray]) -> CapturedImage:
        if cv2 is None:
            raise DeviceUnavailableError("OpenCV not available")
        h, w = frame.shape[:2]
        if overlay is not None:
            merged = composite_overlay(frame, overlay)
            ok, enc = cv2.imencode(".png", merged)
            mime, composited = "image/png", True
        else:
            ok, enc = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
            mime, composited = "image/jpeg", False
        if not ok:
            raise DeviceUnavailableError("Failed to encode captured frame")
        return CapturedImage(data=enc.tobytes(), mime_type=mime, width=w, height=h, composited=composited)


__all__ = ["CaptureEngine", "CapturedImage", "DeviceUnavailableError", "composite_overlay"]
