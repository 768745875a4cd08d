"""Countdown-and-capture state machine driven by the pairing coordinator."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional

from .config import CaptureTimings
from .scheduling import ScheduledTask
from .sensors.camera import CaptureEngine, CapturedImage, DeviceUnavailableError
from .session import SessionContext
from .state import RelayEvent, SequencePhase

logger = logging.getLogger(__name__)

Publisher = Callable[[RelayEvent, Dict[str, Any]], Awaitable[Any]]
PhaseListener = Callable[[SequencePhase, Dict[str, Any]], Awaitable[None]]

DEVICE_ERROR_MESSAGE = "Webcam still not available. Please check your camera and permissions."


class CaptureSequencer:
    """Single-flight capture sequence for one session.

    ``request_capture`` starts ``countdown -> capturing -> cooldown -> idle``
    in a :class:`ScheduledTask`; any request arriving while that task runs is
    dropped. :meth:`abort` cancels the task from any phase.
    """

    def __init__(
        self,
        session: SessionContext,
        engine: CaptureEngine,
        publish: Publisher,
        *,
        timings: Optional[CaptureTimings] = None,
        on_phase: Optional[PhaseListener] = None,
    ) -> None:
        self.session = session
        self.engine = engine
        self.timings = timings or CaptureTimings()
        self._publish = publish
        self._on_phase = on_phase
        self._phase = SequencePhase.IDLE
        self._remaining: Optional[int] = None
        self._request_id: Optional[str] = None
        self._task: Optional[ScheduledTask] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def phase(self) -> SequencePhase:
        return self._phase

    @property
    def remaining(self) -> Optional[int]:
        return self._remaining

    @property
    def is_idle(self) -> bool:
        return self._phase is SequencePhase.IDLE

    def request_capture(self, request_id: Optional[str] = None) -> bool:
        """Accept a capture request when idle; returns False if it was dropped.

        ``request_id`` is echoed on the resulting image or device error so the
        remote can tell a late answer from the one it is waiting for.
        """
        if self.session.disposed:
            logger.info("Capture request ignored - session %s already ended", self.session.session_id)
            return False
        if not self.is_idle or (self._task and self._task.pending):
            logger.info("Capture request ignored - sequence already in %s", self._phase.value)
            return False
        # Leave IDLE synchronously so a second request in the same loop turn is dropped.
        self._phase = SequencePhase.COUNTDOWN
        self._remaining = self.timings.countdown_ticks
        self._request_id = request_id
        self._idle.clear()
        self._task = ScheduledTask(0, self._run_sequence, name=f"capture-sequence-{self.session.session_id}").start()
        return True

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def abort(self) -> None:
        """Cancel any in-flight sequence and force IDLE."""
        task = self._task
        if task and task.pending:
            logger.info("Aborting capture sequence in %s", self._phase.value)
            await task.cancel()
        self._task = None
        if not self.is_idle:
            self._phase = SequencePhase.IDLE
            self._remaining = None
        self._idle.set()

    async def _run_sequence(self) -> None:
        try:
            await self._countdown()
            image = await self._capture()
            if image is None:
                return
            await self._deliver(image)
            await self._set_phase(SequencePhase.COOLDOWN)
            await asyncio.sleep(self.timings.cooldown_seconds)
        finally:
            self._phase = SequencePhase.IDLE
            self._remaining = None
            try:
                if not self.session.disposed:
                    await self._notify(SequencePhase.IDLE, {})
            finally:
                self._idle.set()

    async def _countdown(self) -> None:
        remaining = self.timings.countdown_ticks
        self._remaining = remaining
        await self._set_phase(SequencePhase.COUNTDOWN, remaining=remaining)
        while True:
            await asyncio.sleep(self.timings.tick_seconds)
            remaining -= 1
            if remaining <= 0:
                break
            self._remaining = remaining
            await self._set_phase(SequencePhase.COUNTDOWN, remaining=remaining)
        self._remaining = None

    async def _capture(self) -> Optional[CapturedImage]:
        """Capture with exactly one re-initialisation attempt on device failure."""
        await self._set_phase(SequencePhase.CAPTURING)
        try:
            return await self.engine.capture_still()
        except DeviceUnavailableError as exc:
            logger.warning("📷 Capture failed (%s) - attempting to reconnect webcam", exc)

        await self._set_phase(SequencePhase.RECOVERING, error="Webcam not available. Attempting to reconnect...")
        try:
            await self.engine.reinitialize()
            image = await self.engine.capture_still()
        except DeviceUnavailableError as exc:
            logger.error("📷 Webcam recovery failed: %s", exc)
            await self._publish(
                RelayEvent.DEVICE_ERROR,
                self._event_data(message=DEVICE_ERROR_MESSAGE),
            )
            await self._notify(SequencePhase.RECOVERING, {"failed": True}, error=DEVICE_ERROR_MESSAGE)
            return None
        logger.info("📷 Webcam recovered")
        await self._set_phase(SequencePhase.CAPTURING)
        return image

    async def _deliver(self, image: CapturedImage) -> None:
        count = self.session.record_capture(image)
        await self._publish(
            RelayEvent.IMAGE_CAPTURED,
            self._event_data(image_data=image.to_data_url()),
        )
        logger.info(f"📸 Capture #{count} delivered for session {self.session.session_id} ({len(image.data)} bytes)")

    def _event_data(self, **fields: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {"session_id": self.session.session_id, **fields}
        if self._request_id is not None:
            data["request_id"] = self._request_id
        return data

    async def _set_phase(self, phase: SequencePhase, *, remaining: Optional[int] = None, error: Optional[str] = None) -> None:
        self._phase = phase
        data: Dict[str, Any] = {}
        if remaining is not None:
            data["remaining"] = remaining
        await self._notify(phase, data, error=error)

    async def _notify(self, phase: SequencePhase, data: Dict[str, Any], *, error: Optional[str] = None) -> None:
        if not self._on_phase:
            return
        payload = dict(data)
        if error:
            payload["error"] = error
        try:
            await self._on_phase(phase, payload)
        except Exception as e:
            logger.warning("Sequence listener failed: %s", e)


__all__ = ["CaptureSequencer", "DEVICE_ERROR_MESSAGE"]
