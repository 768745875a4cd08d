"""Relay channel WebSocket client shared by the station and the remote."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from ..config import Settings
from ..state import JOIN_EVENTS, ConnectionRole, RelayEvent

logger = logging.getLogger(__name__)

IncomingHandler = Callable[[dict[str, Any]], Awaitable[None]]
ClosedHandler = Callable[[], Awaitable[None]]


class RelayClient:
    """Maintains one relay connection joined to one session under one role."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._conn: Optional[ClientConnection] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._handler: Optional[IncomingHandler] = None
        self._closed_handler: Optional[ClosedHandler] = None
        self._session_id: Optional[str] = None
        self._role: Optional[ConnectionRole] = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    async def connect(
        self,
        session_id: str,
        role: ConnectionRole,
        handler: IncomingHandler,
        *,
        on_closed: Optional[ClosedHandler] = None,
    ) -> None:
        """Open the socket and join ``session_id`` as ``role``.

        Raises whatever ``websockets`` raises when the relay is unreachable;
        callers map that onto their own error state.
        """
        await self.disconnect()
        uri = self.settings.relay_ws_url
        logger.info("Connecting to relay %s as %s for session %s", uri, role.value, session_id)
        try:
            conn = await connect(uri, ping_interval=None, ping_timeout=None)
        except Exception as e:
            logger.error("Failed to connect to relay: %s", e)
            raise
        self._conn = conn
        self._handler = handler
        self._closed_handler = on_closed
        self._session_id = session_id
        self._role = role
        try:
            await conn.send(json.dumps(self._envelope(JOIN_EVENTS[role], {"session_id": session_id})))
        except Exception as e:
            logger.error("Failed to join relay session %s: %s", session_id, e)
            await self.disconnect()
            raise
        self._listener_task = asyncio.create_task(self._listen(conn), name=f"relay-{role.value}-listener")

    async def disconnect(self) -> None:
        """Close the connection; safe to call repeatedly and from handlers."""
        task = self._listener_task
        conn = self._conn
        self._listener_task = None
        self._conn = None
        self._handler = None
        self._closed_handler = None
        self._session_id = None
        self._role = None
        try:
            if task and task is not asyncio.current_task() and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning("Error during listener task cleanup: %s", e)
            if conn:
                try:
                    await conn.close()
                except Exception as e:
                    logger.warning("Error closing relay connection: %s", e)
        except Exception as e:
            logger.warning("Error during disconnect: %s", e)

    async def send(self, event: RelayEvent, data: Optional[dict[str, Any]] = None) -> bool:
        """Best-effort publish; returns False when nothing was sent."""
        if not self._conn:
            logger.warning("Cannot send %s - relay not connected", event.value)
            return False
        try:
            await self._conn.send(json.dumps(self._envelope(event, data or {})))
            return True
        except websockets.ConnectionClosed:
            logger.warning("Cannot send %s - relay connection closed", event.value)
        except Exception as e:
            logger.error("Failed to send relay message %s: %s", event.value, e)
        return False

    async def _listen(self, conn: ClientConnection) -> None:
        dropped = False
        try:
            async for message in conn:
                try:
                    payload = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Invalid JSON from relay: %r", message)
                    continue
                if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
                    logger.warning("Malformed relay envelope ignored: %r", payload)
                    continue

                if payload["event"] == RelayEvent.PING.value:
                    await self.send(RelayEvent.PONG)
                    continue

                handler = self._handler
                if handler and self._conn is conn:
                    try:
                        await handler(payload)
                    except Exception as e:
                        logger.exception("Error in relay message handler: %s", e)
            dropped = True
        except asyncio.CancelledError:  # cooperative cancel
            raise
        except websockets.ConnectionClosedOK:
            logger.info("Relay connection closed cleanly")
            dropped = True
        except websockets.ConnectionClosedError as exc:
            logger.warning("Relay connection closed: %s", exc)
            dropped = True
        except Exception:  # pragma: no cover - defensive guard
            logger.exception("Relay listener crashed")
            dropped = True
        finally:
            if self._conn is conn:
                closed_handler = self._closed_handler
                self._conn = None
                self._listener_task = None
                self._handler = None
                self._closed_handler = None
                self._session_id = None
                self._role = None
                try:
                    await conn.close()
                except Exception as e:
                    logger.debug("Relay close after drop failed: %s", e)
                if dropped and closed_handler:
                    try:
                        await closed_handler()
                    except Exception:
                        logger.exception("Error in relay closed handler")

    @staticmethod
    def _envelope(event: RelayEvent, data: dict[str, Any]) -> dict[str, Any]:
        return {"event": event.value, "data": data}


__all__ = ["RelayClient", "IncomingHandler", "ClosedHandler"]
