"""Shared test fixtures and fakes."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
import pytest

from booth.config import CaptureTimings, SessionTimings, Settings
from booth.pairing import PairingCoordinator
from booth.sensors.camera import CapturedImage, DeviceUnavailableError
from booth.session import SessionGrant
from booth.state import ConnectionRole, RelayEvent

JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9"


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "capture": CaptureTimings(
            tick_seconds=0.01,
            cooldown_seconds=0.02,
            multi_capture_settle_seconds=0.0,
        ),
        "session": SessionTimings(
            renewal_delay_seconds=0.01,
            inactivity_timeout_seconds=300.0,
            expiry_check_seconds=60.0,
        ),
        "registry_api_url": "http://registry.test",
        "relay_ws_url": "ws://relay.test/ws",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@dataclass
class FakeRegistry:
    """Registry fake; ``None`` entries in ``grants`` simulate failures."""

    grants: list[Optional[SessionGrant]] = field(default_factory=list)
    calls: int = 0
    closed: bool = False

    async def generate_session(self) -> Optional[SessionGrant]:
        self.calls += 1
        if self.grants:
            return self.grants.pop(0)
        session_id = f"session-{self.calls}"
        return SessionGrant(session_id=session_id, pairing_url=f"https://x/mobile/{session_id}")

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class FakeRelay:
    """Relay fake recording joins and sends; ``deliver`` feeds events to the handler."""

    fail_connect: bool = False
    joins: list[tuple[str, ConnectionRole]] = field(default_factory=list)
    sent: list[tuple[RelayEvent, dict[str, Any]]] = field(default_factory=list)
    disconnects: int = 0
    handler: Any = None
    on_closed: Any = None
    session_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.handler is not None

    async def connect(self, session_id, role, handler, *, on_closed=None) -> None:
        if self.fail_connect:
            raise OSError("relay unreachable")
        self.joins.append((session_id, role))
        self.session_id = session_id
        self.handler = handler
        self.on_closed = on_closed

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.handler = None
        self.on_closed = None
        self.session_id = None

    async def send(self, event: RelayEvent, data: Optional[dict[str, Any]] = None) -> bool:
        if not self.connected:
            return False
        self.sent.append((event, data or {}))
        return True

    async def deliver(self, event: str, data: Optional[dict[str, Any]] = None) -> None:
        assert self.handler is not None, "relay not connected"
        await self.handler({"event": event, "data": data or {}})

    async def drop(self) -> None:
        closed = self.on_closed
        self.handler = None
        self.on_closed = None
        if closed:
            await closed()

    def events(self, event: RelayEvent) -> list[dict[str, Any]]:
        return [data for sent, data in self.sent if sent is event]


class FakeEngine:
    """Camera fake: ``capture_failures`` leading captures raise, ``open_failures`` acquires fail."""

    def __init__(self, *, capture_failures: int = 0, open_failures: int = 0, capture_delay: float = 0.0) -> None:
        self.capture_failures = capture_failures
        self.open_failures = open_failures
        self.capture_delay = capture_delay
        self.opens = 0
        self.releases = 0
        self.captures = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    async def acquire(self) -> None:
        if self._active:
            return
        if self.open_failures:
            self.open_failures -= 1
            raise DeviceUnavailableError("no camera")
        self.opens += 1
        self._active = True

    async def release(self) -> None:
        if not self._active:
            return
        self.releases += 1
        self._active = False

    async def reinitialize(self) -> None:
        await self.release()
        await self.acquire()

    async def capture_still(self) -> CapturedImage:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.capture_delay:
                await asyncio.sleep(self.capture_delay)
            if self.capture_failures:
                self.capture_failures -= 1
                raise DeviceUnavailableError("Webcam not available")
            if not self._active:
                raise DeviceUnavailableError("Webcam not available")
            self.captures += 1
            return CapturedImage(data=JPEG_BYTES, mime_type="image/jpeg", width=4, height=3)
        finally:
            self.in_flight -= 1


class RelayHub:
    """In-memory relay: routes events between one station and one remote per session."""

    def __init__(self) -> None:
        self.members: dict[str, dict[ConnectionRole, "HubEndpoint"]] = {}
        self.tasks: set[asyncio.Task[Any]] = set()

    def endpoint(self) -> "HubEndpoint":
        return HubEndpoint(self)

    async def join(self, endpoint: "HubEndpoint", session_id: str, role: ConnectionRole) -> None:
        room = self.members.setdefault(session_id, {})
        room[role] = endpoint
        if role is ConnectionRole.REMOTE and ConnectionRole.STATION in room:
            await room[ConnectionRole.STATION].receive(RelayEvent.REMOTE_JOINED.value, {})

    async def leave(self, endpoint: "HubEndpoint") -> None:
        for session_id, room in list(self.members.items()):
            for role, member in list(room.items()):
                if member is endpoint:
                    del room[role]
                    if role is ConnectionRole.REMOTE and ConnectionRole.STATION in room:
                        await room[ConnectionRole.STATION].receive(RelayEvent.REMOTE_LEFT.value, {})

    async def route(self, endpoint: "HubEndpoint", event: RelayEvent, data: dict[str, Any]) -> None:
        room = self.members.get(endpoint.session_id or "", {})
        if event is RelayEvent.CAPTURE_REQUEST and ConnectionRole.STATION in room:
            await room[ConnectionRole.STATION].receive(event.value, data)
        elif event in (RelayEvent.IMAGE_CAPTURED, RelayEvent.DEVICE_ERROR) and ConnectionRole.REMOTE in room:
            await room[ConnectionRole.REMOTE].receive(event.value, data)
        elif event is RelayEvent.END_SESSION:
            for member in list(room.values()):
                if member is not endpoint:
                    await member.receive(RelayEvent.SESSION_ENDED.value, {})


class HubEndpoint:
    def __init__(self, hub: RelayHub) -> None:
        self.hub = hub
        self.handler: Any = None
        self.session_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.handler is not None

    async def connect(self, session_id, role, handler, *, on_closed=None) -> None:
        self.handler = handler
        self.session_id = session_id
        await self.hub.join(self, session_id, role)

    async def disconnect(self) -> None:
        if self.handler is None:
            return
        self.handler = None
        await self.hub.leave(self)
        self.session_id = None

    async def send(self, event: RelayEvent, data: Optional[dict[str, Any]] = None) -> bool:
        if self.handler is None:
            return False
        await self.hub.route(self, event, data or {})
        return True

    async def receive(self, event: str, data: dict[str, Any]) -> None:
        if self.handler is not None:
            # Deliver on a separate task, as a socket listener would.
            task = asyncio.get_running_loop().create_task(self.handler({"event": event, "data": data}))
            self.hub.tasks.add(task)
            task.add_done_callback(self.hub.tasks.discard)


def abc_grant() -> SessionGrant:
    return SessionGrant(session_id="abc123", pairing_url="https://x/mobile/abc123")


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry(grants=[abc_grant()])


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def coordinator(settings, registry, relay, engine) -> PairingCoordinator:
    return PairingCoordinator(
        settings=settings,
        registry=registry,
        relay=relay,
        engine=engine,
        render_qr=False,
    )


@pytest.fixture
def frame() -> np.ndarray:
    image = np.zeros((30, 40, 3), dtype=np.uint8)
    image[:, :, 1] = 120
    return image
