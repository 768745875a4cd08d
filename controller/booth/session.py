"""Session context owned by the station for the lifetime of one pairing."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .sensors.camera import CapturedImage
from .state import SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionGrant:
    """What the session registry hands back for a new session."""

    session_id: str
    pairing_url: str


@dataclass
class SessionContext:
    """Explicit per-session state passed to the coordinator and the sequencer.

    Created from a :class:`SessionGrant`, disposed on teardown. Nothing in it
    outlives the session.
    """

    session_id: str
    pairing_url: str
    created_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)
    status: SessionStatus = SessionStatus.CREATED
    capture_count: int = 0
    last_capture_at: Optional[datetime] = None
    captured_image: Optional[CapturedImage] = None
    qr_svg: Optional[str] = None

    @classmethod
    def from_grant(cls, grant: SessionGrant) -> "SessionContext":
        return cls(session_id=grant.session_id, pairing_url=grant.pairing_url)

    @property
    def disposed(self) -> bool:
        return self.status is SessionStatus.ENDED

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        return max(0.0, now - self.last_activity_at)

    def is_expired(self, timeout_seconds: float, now: Optional[float] = None) -> bool:
        return self.idle_for(now) >= timeout_seconds

    def mark_paired(self) -> None:
        if self.status is SessionStatus.CREATED:
            self.status = SessionStatus.PAIRED
        self.touch()

    def record_capture(self, image: CapturedImage) -> int:
        """Hold the new image (replacing any previous one) and bump the counter."""
        self.captured_image = image
        self.capture_count += 1
        self.last_capture_at = datetime.now(timezone.utc)
        if self.status is not SessionStatus.ENDED:
            self.status = SessionStatus.ACTIVE
        self.touch()
        return self.capture_count

    def clear_capture(self) -> None:
        if self.captured_image is not None:
            logger.info("Discarding held capture for session %s", self.session_id)
        self.captured_image = None

    def dispose(self) -> None:
        self.clear_capture()
        self.qr_svg = None
        self.status = SessionStatus.ENDED

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pairing_url": self.pairing_url,
            "status": self.status.value,
            "capture_count": self.capture_count,
            "last_capture_at": self.last_capture_at.isoformat() if self.last_capture_at else None,
            "has_image": self.captured_image is not None,
        }


__all__ = ["SessionGrant", "SessionContext"]
