"""Shared state definitions for the photo booth station and remote."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ConnectionRole(str, enum.Enum):
    """Which side of a session a relay connection speaks for."""

    STATION = "station"
    REMOTE = "remote"


class RelayEvent(str, enum.Enum):
    """Event names carried in the relay envelope ``{"event": ..., "data": ...}``."""

    JOIN_STATION = "join_pc_session"
    JOIN_REMOTE = "join_mobile_session"
    JOIN_ERROR = "join_error"
    REMOTE_JOINED = "mobile_connected"
    REMOTE_LEFT = "mobile_disconnected"
    CAPTURE_REQUEST = "capture_image"
    END_SESSION = "end_session"
    SESSION_ENDED = "session_ended"
    IMAGE_CAPTURED = "image_captured"
    DEVICE_ERROR = "webcam_error"
    PING = "ping"
    PONG = "pong"


JOIN_EVENTS: Dict[ConnectionRole, RelayEvent] = {
    ConnectionRole.STATION: RelayEvent.JOIN_STATION,
    ConnectionRole.REMOTE: RelayEvent.JOIN_REMOTE,
}


class ConnectionState(str, enum.Enum):
    """
    Station view of the remote:

    1. NO_REMOTE    - Session open, QR code on screen, nobody attached
    2. CONNECTED    - A remote is attached, camera held, sequencer idle
    3. IN_SEQUENCE  - A remote is attached and a capture sequence is running
    """
    NO_REMOTE = "no_remote"
    CONNECTED = "connected"
    IN_SEQUENCE = "in_sequence"


class ConnectionInput(str, enum.Enum):
    """Inputs accepted by :func:`next_connection_state`."""

    REMOTE_JOINED = "remote_joined"
    REMOTE_LEFT = "remote_left"
    SESSION_ENDED = "session_ended"
    SEQUENCE_STARTED = "sequence_started"
    SEQUENCE_FINISHED = "sequence_finished"


class SequencePhase(str, enum.Enum):
    """
    Capture sequence phases in chronological order:

    1. IDLE        - Ready for a capture request
    2. COUNTDOWN   - Ticking 3, 2, 1 (one tick per second)
    3. CAPTURING   - Reading a frame from the camera
    4. RECOVERING  - Camera failed; one re-initialisation attempt in progress
    5. COOLDOWN    - "Just captured" settle period (1.5s) -> IDLE
    """
    IDLE = "idle"
    COUNTDOWN = "countdown"
    CAPTURING = "capturing"
    RECOVERING = "recovering"
    COOLDOWN = "cooldown"


class SessionStatus(str, enum.Enum):
    CREATED = "created"
    PAIRED = "paired"
    ACTIVE = "active"
    ENDED = "ended"


@dataclass
class StationEvent:
    """Event payload distributed to kiosk UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    connection: ConnectionState
    error: Optional[str] = None


def next_connection_state(state: ConnectionState, event: ConnectionInput) -> ConnectionState:
    """Pure transition function for the station's connection tracking.

    Join and leave are idempotent because the relay may repeat them for the
    same logical connection. Sequence inputs only move between CONNECTED and
    IN_SEQUENCE; without a remote they are ignored.
    """
    if event in (ConnectionInput.REMOTE_LEFT, ConnectionInput.SESSION_ENDED):
        return ConnectionState.NO_REMOTE
    if event is ConnectionInput.REMOTE_JOINED:
        if state is ConnectionState.NO_REMOTE:
            return ConnectionState.CONNECTED
        return state
    if event is ConnectionInput.SEQUENCE_STARTED:
        if state is ConnectionState.CONNECTED:
            return ConnectionState.IN_SEQUENCE
        return state
    if event is ConnectionInput.SEQUENCE_FINISHED:
        if state is ConnectionState.IN_SEQUENCE:
            return ConnectionState.CONNECTED
        return state
    raise ValueError(f"Unknown connection input: {event!r}")


def is_remote_present(state: ConnectionState) -> bool:
    return state is not ConnectionState.NO_REMOTE


__all__ = [
    "ConnectionRole",
    "RelayEvent",
    "JOIN_EVENTS",
    "ConnectionState",
    "ConnectionInput",
    "SequencePhase",
    "SessionStatus",
    "StationEvent",
    "next_connection_state",
    "is_remote_present",
]
