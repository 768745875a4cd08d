"""Session orchestration for the photo booth station over the relay channel."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from typing import Any, Dict, List, Optional

from .backend.http_client import SessionRegistryClient
from .backend.ws_client import RelayClient
from .config import Settings, get_settings
from .qr import render_pairing_qr
from .scheduling import ScheduledTask
from .sensors.camera import CaptureEngine, CapturedImage, DeviceUnavailableError
from .sequencer import CaptureSequencer
from .session import SessionContext
from .state import (
    ConnectionInput,
    ConnectionRole,
    ConnectionState,
    RelayEvent,
    SequencePhase,
    StationEvent,
    is_remote_present,
    next_connection_state,
)

logger = logging.getLogger(__name__)

REGISTRY_ERROR_MESSAGE = "Failed to generate session. Please try again."
RELAY_ERROR_MESSAGE = "Failed to connect to the relay. Please try again."


class PairingError(RuntimeError):
    """Raised when a recoverable pairing step fails."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class PairingCoordinator:
    """Station side: owns the session, the relay connection, the camera and the sequencer."""

    _HEARTBEAT_SECONDS: float = 30.0

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        registry: Optional[SessionRegistryClient] = None,
        relay: Optional[RelayClient] = None,
        engine: Optional[CaptureEngine] = None,
        render_qr: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self._registry = registry or SessionRegistryClient(self.settings)
        self._relay = relay or RelayClient(self.settings)
        self._engine = engine or CaptureEngine.from_settings(self.settings)
        self._render_qr = render_qr

        self._lock = asyncio.Lock()
        self._connection = ConnectionState.NO_REMOTE
        self._session: Optional[SessionContext] = None
        self._sequencer: Optional[CaptureSequencer] = None
        self._error: Optional[str] = None
        self._renewal: Optional[ScheduledTask] = None
        self._multi_capture_active = False
        self._ui_subscribers: List[asyncio.Queue[StationEvent]] = []
        self._background_tasks: list[asyncio.Task[Any]] = []
        self._session_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection

    @property
    def session(self) -> Optional[SessionContext]:
        return self._session

    @property
    def sequencer(self) -> Optional[CaptureSequencer]:
        return self._sequencer

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def engine(self) -> CaptureEngine:
        return self._engine

    @property
    def multi_capture_active(self) -> bool:
        return self._multi_capture_active

    @property
    def renewal_pending(self) -> bool:
        return self._renewal is not None and self._renewal.pending

    @property
    def captured_image(self) -> Optional[CapturedImage]:
        return self._session.captured_image if self._session else None

    def snapshot(self) -> Dict[str, Any]:
        sequencer = self._sequencer
        return {
            "connection": self._connection.value,
            "session": self._session.snapshot() if self._session else None,
            "sequence": sequencer.phase.value if sequencer else SequencePhase.IDLE.value,
            "countdown": sequencer.remaining if sequencer else None,
            "multi_capture_active": self._multi_capture_active,
            "renewal_pending": self.renewal_pending,
            "error": self._error,
        }

    # ------------------------------------------------------------------
    # Service lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("Starting pairing coordinator")
        await self.start_session()
        self._background_tasks.append(asyncio.create_task(self._heartbeat_loop(), name="station-heartbeat"))
        self._background_tasks.append(asyncio.create_task(self._expiry_loop(), name="station-session-expiry"))
        logger.info("Pairing coordinator started")

    async def stop(self) -> None:
        logger.info("Stopping pairing coordinator")
        for task in self._background_tasks:
            task.cancel()
        for task in self._background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping background task: %s", e)
        self._background_tasks.clear()

        for task in list(self._session_tasks):
            task.cancel()
        for task in list(self._session_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping session task: %s", e)
        self._session_tasks.clear()

        await self._cancel_renewal()
        async with self._lock:
            await self._teardown_locked()

        try:
            await self._registry.aclose()
        except Exception as e:
            logger.warning("Error closing registry client: %s", e)
        logger.info("Pairing coordinator stopped")

    # ------------------------------------------------------------------
    # UI fan-out
    # ------------------------------------------------------------------

    def register_ui(self) -> asyncio.Queue[StationEvent]:
        queue: asyncio.Queue[StationEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[StationEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    async def _broadcast(self, event: StationEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest when full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    async def _broadcast_state(self, **data: Any) -> None:
        payload = self.snapshot()
        payload.update(data)
        await self._broadcast(StationEvent(type="state", data=payload, connection=self._connection, error=self._error))

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self) -> bool:
        """Request a new session and join the relay as the station.

        Any previous session is torn down first. On failure the coordinator
        sits in a retryable error state until this is called again.
        """
        await self._cancel_renewal()
        async with self._lock:
            await self._teardown_locked()
            try:
                session = await self._open_session()
            except PairingError as exc:
                logger.error("❌ Session start failed: %s", exc)
                self._error = exc.user_message
                await self._broadcast_state()
                return False

            self._session = session
            self._connection = ConnectionState.NO_REMOTE
            self._error = None
            self._sequencer = CaptureSequencer(
                session,
                self._engine,
                self._publish,
                timings=self.settings.capture,
                on_phase=self._on_sequence_phase,
            )
            logger.info(f"📱 Session {session.session_id} ready - pairing URL {session.pairing_url}")
        await self._broadcast_state(qr_available=session.qr_svg is not None)
        return True

    async def end_session(self, *, renew: bool = True, reason: str = "operator") -> None:
        """Tear the current session down and, by default, schedule a fresh one."""
        logger.info(f"🏁 Ending session ({reason})")
        await self._cancel_renewal()
        async with self._lock:
            await self._teardown_locked()
        await self._broadcast_state(reason=reason)
        if renew:
            self._schedule_renewal()

    async def _open_session(self) -> SessionContext:
        grant = await self._registry.generate_session()
        if grant is None:
            raise PairingError(REGISTRY_ERROR_MESSAGE, log_message="Session registry returned no session")

        session = SessionContext.from_grant(grant)
        if self._render_qr:
            try:
                session.qr_svg = render_pairing_qr(session.pairing_url)
            except Exception as exc:
                logger.warning("QR rendering failed for %s: %s", session.pairing_url, exc)

        try:
            await self._relay.connect(
                session.session_id,
                ConnectionRole.STATION,
                self._handle_relay_message,
                on_closed=self._handle_relay_closed,
            )
        except Exception as exc:
            raise PairingError(RELAY_ERROR_MESSAGE, log_message=f"Relay join failed: {exc}") from exc
        return session

    async def _teardown_locked(self) -> None:
        """Abort any sequence, release the camera, leave the relay, drop session state."""
        sequencer = self._sequencer
        session = self._session
        self._sequencer = None
        self._session = None
        self._connection = next_connection_state(self._connection, ConnectionInput.SESSION_ENDED)

        if session is not None:
            session.dispose()
        if sequencer is not None:
            try:
                await sequencer.abort()
            except Exception as exc:
                logger.warning(f"Error aborting capture sequence: {exc}")
        try:
            await self._engine.release()
        except Exception as exc:
            logger.warning(f"Error releasing webcam: {exc}")
        try:
            await self._relay.disconnect()
        except Exception as exc:
            logger.warning(f"Error disconnecting relay: {exc}")
        if session is not None:
            logger.info(f"🔄 Session {session.session_id} cleaned up")

    def _schedule_renewal(self) -> None:
        delay = self.settings.session.renewal_delay_seconds
        logger.info(f"⏳ New session in {delay}s")
        self._renewal = ScheduledTask(delay, self._renew, name="station-session-renewal").start()

    async def _renew(self) -> None:
        await self.start_session()

    async def _cancel_renewal(self) -> None:
        renewal = self._renewal
        self._renewal = None
        if renewal is not None:
            await renewal.cancel()

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)

    # ------------------------------------------------------------------
    # Relay events
    # ------------------------------------------------------------------

    async def _handle_relay_message(self, message: Dict[str, Any]) -> None:
        """Dispatch one relay envelope; malformed or out-of-context input is ignored."""
        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}
        logger.info("Relay message received: %s", event)

        session = self._session
        session_id = data.get("session_id")
        if session is not None and session_id and session_id != session.session_id:
            logger.warning("Ignoring %s for foreign session %s", event, session_id)
            return

        if event == RelayEvent.REMOTE_JOINED.value:
            await self.handle_remote_joined()
        elif event == RelayEvent.REMOTE_LEFT.value:
            await self.handle_remote_left()
        elif event == RelayEvent.CAPTURE_REQUEST.value:
            request_id = data.get("request_id")
            await self.handle_capture_request(str(request_id) if request_id is not None else None)
        elif event == RelayEvent.SESSION_ENDED.value:
            # Teardown disconnects the relay this handler is running on.
            self._spawn(self.end_session(reason="session_ended"), "station-session-end")
        elif event == RelayEvent.JOIN_ERROR.value:
            logger.error("Relay rejected station join: %s", data.get("message"))
            self._spawn(self._handle_join_rejected(), "station-join-rejected")
        else:
            logger.debug("Ignoring relay event %r", event)

    async def _handle_relay_closed(self) -> None:
        if self._session is None:
            return
        logger.warning("⚠️ Relay connection dropped - restarting session")
        self._spawn(self.end_session(reason="relay_dropped"), "station-relay-dropped")

    async def _handle_join_rejected(self) -> None:
        async with self._lock:
            await self._teardown_locked()
            self._error = RELAY_ERROR_MESSAGE
        await self._broadcast_state()

    async def handle_remote_joined(self) -> None:
        async with self._lock:
            session = self._session
            if session is None:
                logger.info("Remote joined with no open session; ignoring")
                return
            previous = self._connection
            self._connection = next_connection_state(previous, ConnectionInput.REMOTE_JOINED)
            session.mark_paired()
            if previous is ConnectionState.NO_REMOTE:
                logger.info(f"✅ Remote connected to session {session.session_id}")
            try:
                await self._engine.acquire()
            except DeviceUnavailableError as exc:
                # The sequencer's recovery step retries once at capture time.
                logger.warning(f"📷 Webcam not available on pairing: {exc}")
                self._error = "Unable to access webcam. Please ensure camera permissions are granted."
            else:
                self._error = None
        await self._broadcast_state()

    async def handle_remote_left(self) -> None:
        async with self._lock:
            session = self._session
            self._connection = next_connection_state(self._connection, ConnectionInput.REMOTE_LEFT)
            if self._sequencer is not None:
                await self._sequencer.abort()
                self._connection = next_connection_state(self._connection, ConnectionInput.SEQUENCE_FINISHED)
            try:
                await self._engine.release()
            except Exception as exc:
                logger.warning(f"Error releasing webcam: {exc}")
            if session is not None:
                session.clear_capture()
                session.touch()
            logger.info("👋 Remote disconnected")
        await self._broadcast_state()

    async def handle_capture_request(self, request_id: Optional[str] = None) -> bool:
        """Start a capture sequence if a remote is paired and the sequencer is idle."""
        session = self._session
        sequencer = self._sequencer
        if session is None or sequencer is None or not is_remote_present(self._connection):
            logger.info("Capture request without a paired remote; ignoring")
            return False
        session.touch()
        if not sequencer.request_capture(request_id):
            return False
        self._connection = next_connection_state(self._connection, ConnectionInput.SEQUENCE_STARTED)
        logger.info(f"🎬 Capture sequence started for session {session.session_id}")
        return True

    async def _publish(self, event: RelayEvent, data: Dict[str, Any]) -> bool:
        return await self._relay.send(event, data)

    async def _on_sequence_phase(self, phase: SequencePhase, data: Dict[str, Any]) -> None:
        if phase is SequencePhase.IDLE:
            self._connection = next_connection_state(self._connection, ConnectionInput.SEQUENCE_FINISHED)
        error = data.get("error")
        if error:
            self._error = error
        elif phase is SequencePhase.COOLDOWN:
            self._error = None

        if phase is SequencePhase.COUNTDOWN:
            await self._broadcast(
                StationEvent(type="countdown", data={"remaining": data.get("remaining")}, connection=self._connection)
            )
            return
        if phase is SequencePhase.COOLDOWN and self._session:
            await self._broadcast(
                StationEvent(type="capture", data=self._session.snapshot(), connection=self._connection)
            )
        await self._broadcast_state(phase=phase.value)

    # ------------------------------------------------------------------
    # Multi-shot
    # ------------------------------------------------------------------

    async def multi_capture(self, count: Optional[int] = None) -> int:
        """Issue ``count`` captures back to back; returns how many ran.

        Shot k+1 is only requested after the sequencer returned to idle from
        shot k, followed by the settle interval.
        """
        timings = self.settings.capture
        count = self.multi_capture_count(count)
        if self._multi_capture_active:
            logger.info("Multi-capture already running; ignoring")
            return 0

        self._multi_capture_active = True
        await self._broadcast_state()
        completed = 0
        try:
            for index in range(count):
                sequencer = await self._start_batch_shot()
                if sequencer is None:
                    logger.info(f"Multi-capture stopped at shot {index + 1}/{count}")
                    break
                await sequencer.wait_idle()
                completed += 1
                if index + 1 < count:
                    await asyncio.sleep(timings.multi_capture_settle_seconds)
        finally:
            self._multi_capture_active = False
            await self._broadcast_state()
        return completed

    def multi_capture_count(self, count: Optional[int] = None) -> int:
        """Batch size actually run for a requested ``count``."""
        timings = self.settings.capture
        count = timings.multi_capture_default_count if count is None else count
        return max(0, min(int(count), timings.multi_capture_max_count))

    async def _start_batch_shot(self) -> Optional[CaptureSequencer]:
        """Wait for idle and start one batch shot.

        A remote request can take the idle sequencer first; the batch then
        waits that sequence out. Gives up only without a session or remote.
        """
        while True:
            sequencer = self._sequencer
            if sequencer is None or not is_remote_present(self._connection):
                return None
            await sequencer.wait_idle()
            if await self.handle_capture_request():
                return sequencer
            await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeat to UI clients."""
        try:
            while True:
                await asyncio.sleep(self._HEARTBEAT_SECONDS)
                try:
                    await self._broadcast(StationEvent(type="heartbeat", data={}, connection=self._connection))
                except Exception as e:
                    logger.warning("Failed to send heartbeat: %s", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Heartbeat loop crashed: %s", e)

    async def _expiry_loop(self) -> None:
        """End sessions that saw no activity within the inactivity window."""
        timings = self.settings.session
        try:
            while True:
                await asyncio.sleep(timings.expiry_check_seconds)
                try:
                    await self.check_expiry()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.exception("Session expiry check error: %s", exc)
        except asyncio.CancelledError:
            logger.info("Session expiry loop cancelled")
            raise

    async def check_expiry(self, now: Optional[float] = None) -> bool:
        session = self._session
        sequencer = self._sequencer
        if session is None or (sequencer is not None and not sequencer.is_idle):
            return False
        if not session.is_expired(self.settings.session.inactivity_timeout_seconds, now):
            return False
        logger.warning(f"⌛ Session {session.session_id} expired after inactivity")
        await self.end_session(reason="expired")
        return True


__all__ = ["PairingCoordinator", "PairingError", "REGISTRY_ERROR_MESSAGE", "RELAY_ERROR_MESSAGE"]
