"""FastAPI entry-point for the Orin companion."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import (
    ApiError,
    AuthError,
    CameraPermissionError,
    CompanionError,
    DeviceError,
    IdentifierValidationError,
    NetworkError,
)
from .handoff import HandoffOrchestrator
from .logging_config import configure_logging
from .orin_ids import OrinIdService
from .sensors.camera import CaptureController
from .session_manager import SessionManager
from .state import ScanEvent

logger = logging.getLogger(__name__)

settings: Settings = get_settings()
configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
app = FastAPI(title="orin-companion", version="0.1.0")
session = SessionManager(settings=settings)
capture = CaptureController(settings=settings, name="companion-camera")
handoff = HandoffOrchestrator(session, capture, settings=settings)
orin_service = OrinIdService(session, settings=settings)


class ScanTracker:
    """Keeps the single running scan task and what it last reported."""

    def __init__(self) -> None:
        self.task: Optional[asyncio.Task[Any]] = None
        self.kind: Optional[str] = None
        self.last_event: Optional[ScanEvent] = None
        self.result: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def record_event(self, event: ScanEvent) -> None:
        self.last_event = event

    def snapshot(self) -> Dict[str, Any]:
        event = self.last_event
        return {
            "running": self.running,
            "kind": self.kind,
            "capture_state": capture.state.value,
            "last_event": None if event is None else {
                "type": event.type,
                "state": event.state.value,
                "data": event.data,
                "error": event.error,
            },
            "result": self.result,
        }


scans = ScanTracker()
capture.register_listener(scans.record_event)


_ERROR_STATUS = (
    (IdentifierValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (CameraPermissionError, status.HTTP_403_FORBIDDEN),
    (DeviceError, status.HTTP_409_CONFLICT),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
)


@app.exception_handler(CompanionError)
async def companion_exception_handler(request: Request, exc: CompanionError) -> JSONResponse:
    if isinstance(exc, ApiError):
        code = exc.status_code
    else:
        code = next((c for kind, c in _ERROR_STATUS if isinstance(exc, kind)), status.HTTP_400_BAD_REQUEST)
    logger.warning("%s failed: %s", request.url.path, exc)
    content: Dict[str, Any] = {"detail": exc.user_message}
    kind = getattr(exc, "kind", None) or getattr(exc, "reason", None)
    if kind is not None:
        content["kind"] = kind.value
    return JSONResponse(status_code=code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
    """Catch-all exception handler to prevent application crashes."""
    logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
    return PlainTextResponse(
        f"Internal server error: {str(exc)}",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors gracefully."""
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


@app.on_event("startup")
async def on_startup() -> None:
    try:
        await session.start()
        logger.info("Application started successfully")
    except Exception as e:
        logger.exception("Failed to start services: %s", e)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    try:
        await _stop_scan()
        await session.aclose()
        logger.info("Application shutdown complete")
    except Exception as e:
        logger.exception("Error during shutdown: %s", e)


class CredentialsRequest(BaseModel):
    email: str
    password: str


class OrinIdRequest(BaseModel):
    orinId: str


@app.get("/healthz")
async def healthcheck() -> JSONResponse:
    return JSONResponse({"status": "ok", "capture": capture.state.value})


@app.get("/auth/status")
async def auth_status() -> JSONResponse:
    return JSONResponse({
        "authenticated": session.is_valid(),
        "orinId": session.orin_id,
        "refreshAt": session.refresh_at(),
    })


@app.post("/auth/login")
async def login(payload: CredentialsRequest) -> JSONResponse:
    tokens = await session.login(payload.email, payload.password)
    return JSONResponse({"authenticated": True, "orinId": tokens.orin_id})


@app.post("/auth/signup")
async def signup(payload: CredentialsRequest) -> JSONResponse:
    tokens = await session.signup_and_login(payload.email, payload.password)
    return JSONResponse({"authenticated": True, "orinId": tokens.orin_id}, status_code=status.HTTP_201_CREATED)


@app.post("/auth/logout")
async def logout() -> JSONResponse:
    await _stop_scan()
    session.logout()
    return JSONResponse({"authenticated": False})


async def _run_login_scan() -> None:
    result = await handoff.scan_and_approve(on_event=scans.record_event)
    scans.result = None if result is None else {"approved": result.approved, "message": result.message}


async def _run_identifier_scan() -> None:
    orin_id = await orin_service.scan_identifier(capture, on_event=scans.record_event)
    scans.result = None if orin_id is None else {"orinId": orin_id}


def _start_scan(kind: str, runner: Callable[[], Awaitable[None]]) -> JSONResponse:
    if scans.running:
        return JSONResponse({"detail": "A scan is already running."}, status_code=status.HTTP_409_CONFLICT)
    scans.kind = kind
    scans.result = None
    scans.last_event = None
    scans.task = asyncio.create_task(runner(), name=f"scan-{kind}")
    scans.task.add_done_callback(_log_scan_outcome)
    return JSONResponse(scans.snapshot(), status_code=status.HTTP_202_ACCEPTED)


def _log_scan_outcome(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        logger.info("Scan task cancelled")
        return
    exc = task.exception()
    if isinstance(exc, CompanionError):
        scans.result = {"error": exc.user_message}
        logger.warning("Scan ended with error: %s", exc)
    elif exc is not None:
        scans.result = {"error": "Scan failed."}
        logger.error("Scan task crashed", exc_info=exc)


async def _stop_scan() -> None:
    capture.stop()
    task = scans.task
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Error stopping scan task: %s", e)


@app.post("/scan/login")
async def scan_login() -> JSONResponse:
    return _start_scan("login", _run_login_scan)


@app.post("/scan/identifier")
async def scan_identifier() -> JSONResponse:
    return _start_scan("identifier", _run_identifier_scan)


@app.get("/scan/status")
async def scan_status() -> JSONResponse:
    return JSONResponse(scans.snapshot())


@app.post("/scan/stop")
async def scan_stop() -> JSONResponse:
    await _stop_scan()
    return JSONResponse(scans.snapshot())


@app.get("/orin/my")
async def get_my_orin_id() -> JSONResponse:
    record = await orin_service.get_mine()
    return JSONResponse(record.model_dump(by_alias=True))


@app.put("/orin/my")
async def update_my_orin_id(payload: OrinIdRequest) -> JSONResponse:
    record = await orin_service.update_mine(payload.orinId)
    return JSONResponse(record.model_dump(by_alias=True))


@app.delete("/orin/my")
async def delete_my_orin_id() -> JSONResponse:
    record = await orin_service.delete_mine()
    return JSONResponse(record.model_dump(by_alias=True))


@app.get("/orin/user/{orin_id}")
async def lookup_orin_id(orin_id: str) -> JSONResponse:
    record = await orin_service.lookup(orin_id)
    return JSONResponse(record.model_dump(by_alias=True))


@app.get("/orin/check/{orin_id}")
async def check_orin_id(orin_id: str) -> JSONResponse:
    availability = await orin_service.check_availability(orin_id)
    return JSONResponse({"available": availability.available, "message": availability.message})


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.companion_host, port=settings.companion_port)


if __name__ == "__main__":
    run()
