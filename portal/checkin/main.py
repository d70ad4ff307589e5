"""FastAPI entry-point for the visitor check-in portal."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import psutil
import uvicorn
from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .logging_config import configure_logging
from .models import ApiModel
from .session_manager import CheckInSessionManager
from .state import EntryDirective

logger = logging.getLogger(__name__)


class LookupRequest(ApiModel):
    phone_number: str
    year_of_birth: Optional[int] = None


class IdleToggleRequest(BaseModel):
    enabled: bool = True


def create_app(
    manager: Optional[CheckInSessionManager] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the portal app; tests inject a manager wired to stub collaborators."""
    settings = settings or (manager.settings if manager else get_settings())
    manager = manager or CheckInSessionManager(settings=settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            await manager.start()
            logger.info("Portal started successfully")
        except Exception as e:
            logger.exception("Failed to start session manager: %s", e)
            # Start in degraded mode; the flow falls back to manual entry on backend errors
        yield
        try:
            await manager.stop()
            logger.info("Portal shutdown complete")
        except Exception as e:
            logger.exception("Error during shutdown: %s", e)

    app = FastAPI(title="visitor-checkin-portal", version="0.1.0", lifespan=lifespan)
    app.state.manager = manager

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Catch-all exception handler to keep the kiosk responsive."""
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return PlainTextResponse(
            f"Internal server error: {exc}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
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

    def phase_response(**extra: Any) -> JSONResponse:
        return JSONResponse({"phase": manager.phase.value, **extra})

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        """Liveness plus the session state and host load the kiosk operator checks first."""
        snapshot = manager.snapshot()
        return JSONResponse(
            {
                "status": "ok",
                "phase": snapshot["phase"],
                "busy": snapshot["busy"],
                "idle": snapshot["idle"],
                "host": _host_usage(),
            }
        )

    @app.get("/portal/state")
    async def portal_state() -> JSONResponse:
        return JSONResponse(manager.snapshot())

    @app.get("/portal/settings")
    async def portal_settings() -> JSONResponse:
        app_settings = await manager.app_settings()
        return JSONResponse(app_settings.to_wire())

    @app.post("/portal/start")
    async def portal_start(request: Request) -> JSONResponse:
        """Portal mount; `type=new|returning|prefill` query directives are consumed once."""
        directive = EntryDirective.from_query(request.query_params)
        phase = await manager.mount(directive)
        # The kiosk clears the directive from its address bar after this call
        return JSONResponse({"phase": phase.value, "directive": directive.kind.value if directive else None})

    @app.post("/portal/select-new")
    async def portal_select_new() -> JSONResponse:
        accepted = await manager.select_new_visitor()
        return phase_response(accepted=accepted)

    @app.post("/portal/lookup")
    async def portal_lookup(payload: LookupRequest) -> JSONResponse:
        await manager.lookup_returning(payload.phone_number, payload.year_of_birth)
        return phase_response()

    @app.post("/portal/form")
    async def portal_form_update(values: Dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        accepted = await manager.update_form(values or {})
        return phase_response(accepted=accepted)

    @app.post("/portal/form/next")
    async def portal_form_next() -> JSONResponse:
        navigation = await manager.form_next()
        return phase_response(navigation=navigation.value)

    @app.post("/portal/form/back")
    async def portal_form_back() -> JSONResponse:
        navigation = await manager.form_back()
        return phase_response(navigation=navigation.value)

    @app.post("/portal/activity")
    async def portal_activity() -> JSONResponse:
        return phase_response(reset=manager.record_activity())

    @app.post("/portal/idle")
    async def portal_idle_toggle(payload: IdleToggleRequest) -> JSONResponse:
        manager.set_idle_enabled(payload.enabled)
        return phase_response(enabled=manager.idle_timer.enabled)

    @app.post("/portal/countdown/cancel")
    async def portal_cancel_countdown() -> JSONResponse:
        changed = await manager.cancel_auto_redirect()
        countdown = manager.countdown
        return phase_response(changed=changed, cancelled=bool(countdown and countdown.cancelled))

    @app.post("/portal/home")
    async def portal_home() -> JSONResponse:
        await manager.return_home()
        return phase_response()

    @app.post("/portal/check-out")
    async def portal_check_out() -> JSONResponse:
        checked_out = await manager.check_out()
        return phase_response(checkedOut=checked_out)

    @app.websocket("/ws/ui")
    async def ui_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = manager.register_ui()
        try:
            while True:
                try:
                    event = await queue.get()
                except asyncio.CancelledError:
                    break  # Clean shutdown

                try:
                    await ws.send_json(event.to_payload())
                except Exception as e:
                    logger.debug("WebSocket send failed (client disconnected): %s", e)
                    break
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            pass  # Clean shutdown
        except Exception as e:
            logger.error("Unexpected error in UI websocket: %s", e)
        finally:
            manager.unregister_ui(queue)
            try:
                await ws.close()
            except Exception:
                pass

    return app


def _host_usage() -> Optional[Dict[str, float]]:
    """CPU since the previous call and current memory; None when psutil cannot read the host."""
    try:
        memory = psutil.virtual_memory()
        return {
            "cpu_percent": round(psutil.cpu_percent(interval=None), 1),
            "memory_percent": round(memory.percent, 1),
            "memory_used_mb": round(memory.used / (1024 * 1024), 1),
        }
    except Exception as e:
        logger.error("Host usage unavailable: %s", e)
        return None


def run() -> None:
    """Console entry point: configure logging and serve the portal."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
    uvicorn.run(create_app(settings=settings), host=settings.portal_host, port=settings.portal_port)


if __name__ == "__main__":
    run()
