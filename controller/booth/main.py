"""FastAPI entry-point for the photo booth station."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .logging_config import configure_logging
from .pairing import PairingCoordinator
from .state import is_remote_present

logger = logging.getLogger(__name__)


class MultiCaptureRequest(BaseModel):
    count: Optional[int] = Field(None, ge=1, description="Photos in the batch (defaults to settings)")


def create_app(
    *,
    settings: Optional[Settings] = None,
    coordinator: Optional[PairingCoordinator] = None,
) -> FastAPI:
    settings = settings or (coordinator.settings if coordinator else get_settings())
    manager = coordinator or PairingCoordinator(settings=settings)
    app = FastAPI(title="booth-station", version="0.1.0")
    app.state.coordinator = manager
    app.state.background_tasks = set()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
        return PlainTextResponse(
            f"Internal server error: {str(exc)}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors gracefully."""
        logger.warning(f"Validation error in {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        try:
            await manager.start()
            logger.info("Application started successfully")
        except Exception as e:
            logger.exception(f"Failed to start services: {e}")
            logger.error("Application startup failed - some features may not work")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        try:
            for task in list(app.state.background_tasks):
                task.cancel()
            await manager.stop()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception(f"Error during shutdown: {e}")

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        return JSONResponse({"status": "ok", "connection": manager.connection_state.value})

    @app.get("/debug/performance")
    async def debug_performance() -> JSONResponse:
        """Host and station-process load, for spotting a stuck camera thread."""
        try:
            memory = psutil.virtual_memory()
            process = psutil.Process()
            with process.oneshot():
                rss = process.memory_info().rss
                threads = process.num_threads()

            return JSONResponse({
                "cpu_percent": round(psutil.cpu_percent(interval=0.1), 1),
                "memory_percent": round(memory.percent, 1),
                "memory_total_mb": round(memory.total / (1024 * 1024), 1),
                "process_rss_mb": round(rss / (1024 * 1024), 1),
                "process_threads": threads,
                "camera_active": manager.engine.is_active,
            })
        except Exception as e:
            logger.error(f"Performance monitoring error: {e}")
            return JSONResponse({"error": str(e)}, status_code=500)

    @app.get("/session")
    async def session_state() -> JSONResponse:
        return JSONResponse(manager.snapshot())

    @app.post("/session/new")
    async def new_session() -> JSONResponse:
        """Operator 'Generate New QR Code' button."""
        ok = await manager.start_session()
        if not ok:
            return JSONResponse(
                {"status": "error", "message": manager.error, "state": manager.snapshot()},
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        return JSONResponse({"status": "ok", "state": manager.snapshot()})

    @app.post("/session/end")
    async def end_session() -> JSONResponse:
        await manager.end_session(reason="operator")
        return JSONResponse({"status": "ended", "state": manager.snapshot()})

    @app.get("/pairing/qr.svg")
    async def pairing_qr() -> Response:
        session = manager.session
        if session is None or not session.qr_svg:
            return JSONResponse({"status": "error", "message": "No pairing code available"}, status_code=404)
        return Response(content=session.qr_svg, media_type="image/svg+xml")

    @app.post("/capture/multi")
    async def multi_capture(payload: Optional[MultiCaptureRequest] = None) -> JSONResponse:
        """Start a station-side batch of captures."""
        if manager.multi_capture_active:
            return JSONResponse({"status": "busy"}, status_code=status.HTTP_409_CONFLICT)
        if not is_remote_present(manager.connection_state):
            return JSONResponse(
                {"status": "error", "message": "No remote connected"},
                status_code=status.HTTP_409_CONFLICT,
            )
        count = manager.multi_capture_count(payload.count if payload else None)
        task = asyncio.create_task(manager.multi_capture(count), name="station-multi-capture")
        app.state.background_tasks.add(task)
        task.add_done_callback(app.state.background_tasks.discard)
        logger.info(f"📸 Multi-capture of {count} started")
        return JSONResponse({"status": "started", "count": count}, status_code=status.HTTP_202_ACCEPTED)

    @app.get("/capture/latest")
    async def latest_capture() -> Response:
        """Download the currently held capture."""
        image = manager.captured_image
        session = manager.session
        if image is None or session is None:
            return JSONResponse({"status": "error", "message": "No capture available"}, status_code=404)
        suffix = "png" if image.mime_type == "image/png" else "jpg"
        filename = f"photo-{session.session_id}-{session.capture_count}.{suffix}"
        return Response(
            content=image.data,
            media_type=image.mime_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            await ws.send_json({"type": "state", "connection": manager.connection_state.value, "data": manager.snapshot()})
            while True:
                try:
                    event = await queue.get()
                except asyncio.CancelledError:
                    break  # Clean shutdown

                payload: dict[str, Any] = {
                    "type": event.type,
                    "connection": event.connection.value,
                    "data": event.data,
                }
                if event.error:
                    payload["error"] = event.error

                try:
                    await ws.send_json(payload)
                except Exception as e:
                    # WebSocket closed, break out of loop
                    logger.debug(f"WebSocket send failed (client disconnected): {e}")
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass  # Clean shutdown
        except Exception as e:
            logger.error(f"Unexpected error in UI websocket: {e}")
        finally:
            manager.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


def build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
    return create_app(settings=settings)


app = build_default_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("booth.main:app", host=settings.controller_host, port=settings.controller_port)


if __name__ == "__main__":
    run()
