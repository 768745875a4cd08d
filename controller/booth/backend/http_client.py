"""HTTP client for the session registry REST endpoint."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import Settings
from ..session import SessionGrant

logger = logging.getLogger(__name__)

GENERATE_SESSION_PATH = "/api/generate-session"


class SessionRegistryClient:
    """Thin wrapper around the registry REST API."""

    def __init__(self, settings: Settings, *, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.registry_api_url,
            timeout=self.settings.registry_timeout_seconds,
        )

    async def generate_session(self) -> Optional[SessionGrant]:
        """Ask the registry for a fresh session id and pairing URL.

        Returns ``None`` on any failure; the caller decides what the operator
        sees. Nothing is retried here.
        """
        try:
            logger.info("registry.generate_session: requesting new session")
            response = await self._client.post(
                GENERATE_SESSION_PATH,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.error("registry.generate_session: request timeout")
            return None
        except httpx.NetworkError as e:
            logger.error("registry.generate_session: network error - %s", e)
            return None
        except httpx.HTTPStatusError as e:
            logger.error("registry.generate_session: HTTP %d - %s", e.response.status_code, e.response.text)
            return None
        except ValueError as e:
            logger.error("registry.generate_session: invalid JSON - %s", e)
            return None
        except Exception as e:
            logger.exception("registry.generate_session: unexpected error - %s", e)
            return None

        if not isinstance(data, dict) or data.get("status") != "success":
            logger.error("registry.generate_session: registry refused %s", data)
            return None

        session_id = data.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            logger.error("registry.generate_session: response missing session_id %s", data)
            return None

        pairing_url = data.get("qr_data") or self._fallback_pairing_url(session_id)
        if not pairing_url:
            logger.error("registry.generate_session: response missing qr_data %s", data)
            return None
        return SessionGrant(session_id=session_id, pairing_url=str(pairing_url))

    def _fallback_pairing_url(self, session_id: str) -> Optional[str]:
        base = self.settings.pairing_base_url
        if not base:
            return None
        return f"{base.rstrip('/')}/mobile/{session_id}"

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)
