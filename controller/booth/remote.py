"""Handheld remote control: joins a session from a pairing link and fires the shutter."""
from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from .backend.ws_client import RelayClient
from .config import Settings, get_settings
from .sensors.camera import CapturedImage
from .state import ConnectionRole, RelayEvent

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
PAIRING_SEGMENT = "mobile"


class RemotePhase(str, enum.Enum):
    """
    1. IDLE            - Nothing opened yet
    2. CONNECTING      - Joining the relay
    3. CONNECTED       - Joined; captures may be requested
    4. CANNOT_CONNECT  - Terminal: bad link, join rejected or connection lost
    5. ENDED           - Terminal: the session was ended
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CANNOT_CONNECT = "cannot_connect"
    ENDED = "ended"


TERMINAL_PHASES = frozenset({RemotePhase.CANNOT_CONNECT, RemotePhase.ENDED})


@dataclass
class RemoteResult:
    """Outcome observed after a capture request, or a terminal notice."""

    kind: str  # "image", "device_error" or "ended"
    image: Optional[CapturedImage] = None
    message: Optional[str] = None
    request_id: Optional[str] = None


def extract_session_id(link: Optional[str]) -> Optional[str]:
    """Pull the session id out of a pairing link such as ``https://host/mobile/<id>``.

    A bare id is accepted as well. Returns ``None`` when nothing valid is found.
    """
    if not link or not link.strip():
        return None
    link = link.strip()
    parsed = urlparse(link)
    if not parsed.scheme and "/" not in link:
        candidate: Optional[str] = link
    else:
        segments = [unquote(s) for s in parsed.path.split("/") if s]
        candidate = None
        if PAIRING_SEGMENT in segments:
            index = segments.index(PAIRING_SEGMENT)
            if index + 1 < len(segments):
                candidate = segments[index + 1]
        elif segments:
            candidate = segments[-1]
    if candidate and SESSION_ID_PATTERN.match(candidate):
        return candidate
    return None


def _request_id_of(data: Dict[str, Any]) -> Optional[str]:
    request_id = data.get("request_id")
    return None if request_id is None else str(request_id)


class RemoteCoordinator:
    """Remote role: one join attempt, fire-and-forget capture requests."""

    def __init__(self, *, settings: Optional[Settings] = None, relay: Optional[RelayClient] = None) -> None:
        self.settings = settings or get_settings()
        self._relay = relay or RelayClient(self.settings)
        self._phase = RemotePhase.IDLE
        self._session_id: Optional[str] = None
        self._latest_image: Optional[CapturedImage] = None
        self._last_error: Optional[str] = None
        self._images_received = 0
        self._requests_sent = 0
        self._last_request_id: Optional[str] = None
        self._results: asyncio.Queue[RemoteResult] = asyncio.Queue()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def phase(self) -> RemotePhase:
        return self._phase

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def latest_image(self) -> Optional[CapturedImage]:
        return self._latest_image

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def images_received(self) -> int:
        return self._images_received

    @property
    def last_request_id(self) -> Optional[str]:
        return self._last_request_id

    async def open(self, link: Optional[str]) -> bool:
        """Join the session named by ``link``; no retry on failure."""
        if self._phase in TERMINAL_PHASES:
            logger.info("Remote is in terminal state %s; ignoring open", self._phase.value)
            return False
        session_id = extract_session_id(link)
        if session_id is None:
            logger.error("No valid session id in pairing link %r", link)
            self._enter_terminal(RemotePhase.CANNOT_CONNECT, "Invalid pairing link")
            return False

        self._session_id = session_id
        self._phase = RemotePhase.CONNECTING
        try:
            await self._relay.connect(
                session_id,
                ConnectionRole.REMOTE,
                self._handle_relay_message,
                on_closed=self._handle_relay_closed,
            )
        except Exception as exc:
            logger.error("Remote could not join session %s: %s", session_id, exc)
            self._enter_terminal(RemotePhase.CANNOT_CONNECT, "Cannot connect to session")
            return False

        if self._phase is RemotePhase.CONNECTING:
            self._phase = RemotePhase.CONNECTED
            logger.info(f"📱 Remote joined session {session_id}")
        return self._phase is RemotePhase.CONNECTED

    async def request_capture(self) -> bool:
        """Emit a capture request; does not wait for the station."""
        if self._phase is not RemotePhase.CONNECTED or not self._session_id:
            logger.info("Capture request ignored in phase %s", self._phase.value)
            return False
        self._last_error = None
        self._requests_sent += 1
        self._last_request_id = str(self._requests_sent)
        return await self._relay.send(
            RelayEvent.CAPTURE_REQUEST,
            {"session_id": self._session_id, "request_id": self._last_request_id},
        )

    async def end_session(self) -> None:
        """Ask the relay to end the session for both sides, then leave."""
        if self._phase is RemotePhase.CONNECTED and self._session_id:
            await self._relay.send(RelayEvent.END_SESSION, {"session_id": self._session_id})
        await self._relay.disconnect()
        self._enter_terminal(RemotePhase.ENDED, None)

    async def close(self) -> None:
        await self._relay.disconnect()

    async def wait_for_result(
        self, timeout: Optional[float] = None, *, request_id: Optional[str] = None
    ) -> Optional[RemoteResult]:
        """Wait for the next image, device error or end notice; ``None`` on timeout.

        With ``request_id`` set, answers tagged for a different request are
        dropped. Untagged answers always match.
        """
        try:
            return await asyncio.wait_for(self._next_result(request_id), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def discard_pending_results(self) -> int:
        """Drop answers nobody waited for; returns how many were dropped."""
        dropped = 0
        while not self._results.empty():
            self._results.get_nowait()
            dropped += 1
        if dropped:
            logger.info("Discarded %d stale result(s)", dropped)
        return dropped

    async def _next_result(self, request_id: Optional[str]) -> RemoteResult:
        while True:
            result = await self._results.get()
            if request_id is None or result.request_id in (None, request_id):
                return result
            logger.info("Dropping late %s for capture request %s", result.kind, result.request_id)

    async def _handle_relay_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        if event == RelayEvent.IMAGE_CAPTURED.value:
            self._handle_image(data)
        elif event == RelayEvent.DEVICE_ERROR.value:
            self._last_error = str(data.get("message") or "Camera unavailable")
            logger.warning("Station reported device error: %s", self._last_error)
            self._results.put_nowait(
                RemoteResult(kind="device_error", message=self._last_error, request_id=_request_id_of(data))
            )
        elif event == RelayEvent.SESSION_ENDED.value:
            logger.info("Station ended session %s", self._session_id)
            self._enter_terminal(RemotePhase.ENDED, None)
            self._spawn_disconnect("remote-session-ended")
        elif event == RelayEvent.JOIN_ERROR.value:
            logger.error("Relay rejected remote join: %s", data.get("message"))
            self._enter_terminal(RemotePhase.CANNOT_CONNECT, str(data.get("message") or "Join rejected"))
            self._spawn_disconnect("remote-join-rejected")
        else:
            logger.debug("Remote ignoring relay event %r", event)

    def _handle_image(self, data: Dict[str, Any]) -> None:
        image_data = data.get("image_data")
        if not isinstance(image_data, str):
            logger.warning("image_captured without image data ignored")
            return
        try:
            image = CapturedImage.from_data_url(image_data)
        except ValueError as exc:
            logger.warning("Undecodable image from station: %s", exc)
            return
        self._latest_image = image
        self._images_received += 1
        logger.info(f"🖼️ Received capture #{self._images_received} ({len(image.data)} bytes)")
        self._results.put_nowait(RemoteResult(kind="image", image=image, request_id=_request_id_of(data)))

    async def _handle_relay_closed(self) -> None:
        if self._phase in TERMINAL_PHASES:
            return
        logger.warning("Relay connection lost")
        self._enter_terminal(RemotePhase.CANNOT_CONNECT, "Connection lost")

    def _spawn_disconnect(self, name: str) -> None:
        # The handler runs on the listener task that disconnect() tears down.
        task = asyncio.create_task(self._relay.disconnect(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _enter_terminal(self, phase: RemotePhase, message: Optional[str]) -> None:
        if self._phase in TERMINAL_PHASES:
            return
        self._phase = phase
        if message:
            self._last_error = message
        self._results.put_nowait(RemoteResult(kind="ended", message=message))


__all__ = ["RemoteCoordinator", "RemotePhase", "RemoteResult", "extract_session_id"]
