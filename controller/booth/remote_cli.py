#!/usr/bin/env python3
# Command-line remote: open a pairing link, fire the shutter, save what comes back.

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import get_settings
from .remote import RemoteCoordinator, RemotePhase

log = logging.getLogger("booth.remote_cli")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CANNOT_CONNECT = 2

_EXTENSIONS = {"image/png": ".png", "image/jpeg": ".jpg"}


async def run(link: str, shots: int, output_dir: Path, timeout: float, relay_url: Optional[str] = None) -> int:
    settings = get_settings()
    if relay_url:
        settings = settings.model_copy(update={"relay_ws_url": relay_url})
    remote = RemoteCoordinator(settings=settings)

    if not await remote.open(link):
        log.error("Cannot connect: %s", remote.last_error or "unknown reason")
        return EXIT_CANNOT_CONNECT

    saved = 0
    try:
        for shot in range(1, shots + 1):
            remote.discard_pending_results()
            if not await remote.request_capture():
                log.error("Shot %d not sent (phase=%s)", shot, remote.phase.value)
                break
            result = await remote.wait_for_result(timeout, request_id=remote.last_request_id)
            if result is None:
                log.warning("Shot %d: no answer within %.1fs", shot, timeout)
                continue
            if result.kind == "device_error":
                log.warning("Shot %d: station camera error - %s", shot, result.message)
                continue
            if result.kind == "ended" or result.image is None:
                log.info("Session ended by station")
                break
            output_dir.mkdir(parents=True, exist_ok=True)
            suffix = _EXTENSIONS.get(result.image.mime_type, ".bin")
            path = output_dir / f"{remote.session_id}_{shot:02d}{suffix}"
            path.write_bytes(result.image.data)
            saved += 1
            log.info("Shot %d saved to %s", shot, path)
    finally:
        if remote.phase is RemotePhase.CONNECTED:
            await remote.close()

    return EXIT_OK if saved == shots else EXIT_PARTIAL


def parse(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Photo booth remote control")
    ap.add_argument("link", help="Pairing link (https://host/mobile/<session_id>) or bare session id")
    ap.add_argument("--shots", type=int, default=1, help="Number of captures to request, one at a time")
    ap.add_argument("--output", type=Path, default=Path("captures"), help="Directory for received images")
    ap.add_argument("--timeout", type=float, default=15.0, help="Seconds to wait for each image")
    ap.add_argument("--relay-url", default=None, help="Override the relay WebSocket URL")
    ap.add_argument("--log", default="info", choices=["debug", "info", "warn", "error"])
    return ap.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse(argv)
    lvl = dict(debug=logging.DEBUG, info=logging.INFO, warn=logging.WARNING, error=logging.ERROR)[args.log]
    logging.basicConfig(level=lvl, format="%(asctime)s | %(levelname)s | %(message)s")
    return asyncio.run(run(args.link, max(1, args.shots), args.output, args.timeout, args.relay_url))


if __name__ == "__main__":
    sys.exit(main())
