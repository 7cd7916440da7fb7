"""
phonebot API Server
===================

FastAPI server exposing the bot controller to a UI: device discovery,
start/stop, status, recent logs, an ADB availability check, and a
WebSocket that streams every log entry and status change.

Run directly:
    python -m phonebot.api
    uvicorn phonebot.api:app --host 0.0.0.0 --port 8765

Port configurable via PHONEBOT_API_PORT (default 8765).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Callable, Deque, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from phonebot import __version__
from phonebot.adb_manager import AdbManager, CommandExecutor
from phonebot.bot_controller import BotController
from phonebot.config import API_PORT, ALLOWED_ORIGINS, LOG_BUFFER_SIZE, LOG_DATEFMT, LOG_FORMAT, BotConfig
from phonebot.errors import AlreadyRunningError, ExecutionError, NoDevicesError
from phonebot.event_bus import EventStream, LogEntry, RunStatus

logger = logging.getLogger("phonebot.api")

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------


class StartRequest(BaseModel):
    devices: Optional[List[str]] = None


class StartResponse(BaseModel):
    success: bool
    run_id: str
    devices: List[str]


class StopResponse(BaseModel):
    success: bool
    status: str


class StatusResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    devices: List[str] = []
    started_at: Optional[str] = None


class DevicesResponse(BaseModel):
    devices: List[str]
    count: int


class AdbCheckResponse(BaseModel):
    available: bool
    adb_path: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    bot_status: str
    version: str
    uptime_seconds: float


# ---------------------------------------------------------------------------
# App State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the controller, its executor and the recent-log buffer."""

    def __init__(self) -> None:
        self.config: Optional[BotConfig] = None
        self.executor: Optional[CommandExecutor] = None
        self.controller: Optional[BotController] = None
        self.logs: Deque[Dict[str, Any]] = deque(maxlen=LOG_BUFFER_SIZE)
        self.start_time: float = 0.0
        self._unsubscribe: Optional[Callable[[], None]] = None


state = AppState()


def attach_controller(controller: BotController, executor: Optional[CommandExecutor] = None) -> None:
    """Install *controller* (and optionally its executor) as the served instance."""
    if state._unsubscribe is not None:
        state._unsubscribe()
    state.controller = controller
    state.executor = executor or controller.executor
    state.logs.clear()
    state._unsubscribe = controller.events.subscribe_logs(
        lambda entry: state.logs.append(entry.to_dict())
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the executor and controller on startup, drain them on shutdown."""
    state.start_time = time.monotonic()
    state.config = BotConfig.from_env()
    state.logs = deque(maxlen=state.config.log_buffer_size)

    executor = state.config.build_executor()
    controller = BotController(
        executor,
        target=state.config.target,
        timing=state.config.timing,
    )
    attach_controller(controller, executor)
    logger.info(
        "phonebot API started (executor=%s, target=%s)",
        state.config.executor_kind, state.config.target.package,
    )

    yield

    logger.info("Shutting down phonebot API")
    if state.controller is not None:
        await state.controller.shutdown()
    if state.executor is not None:
        await state.executor.close()


app = FastAPI(
    title="phonebot",
    description="Multi-device Android automation controller",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _controller() -> BotController:
    if state.controller is None:
        raise HTTPException(503, "Bot controller not initialised")
    return state.controller


async def _discover() -> List[str]:
    if state.executor is None:
        raise HTTPException(503, "Command executor not initialised")
    try:
        return await state.executor.get_devices()
    except NotImplementedError as exc:
        raise HTTPException(501, str(exc))
    except ExecutionError as exc:
        logger.error("Device discovery failed: %s", exc)
        raise HTTPException(502, f"ADB error: {exc}")


# ===================================================================
# Health
# ===================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    controller = _controller()
    return HealthResponse(
        status="ok",
        bot_status=controller.status.value,
        version=__version__,
        uptime_seconds=round(time.monotonic() - state.start_time, 1),
    )


# ===================================================================
# Devices
# ===================================================================


@app.get("/devices", response_model=DevicesResponse, tags=["Devices"])
async def get_devices() -> DevicesResponse:
    devices = await _discover()
    return DevicesResponse(devices=devices, count=len(devices))


@app.post("/devices/refresh", response_model=DevicesResponse, tags=["Devices"])
async def refresh_devices() -> DevicesResponse:
    logger.info("Refreshing devices...")
    devices = await _discover()
    logger.info("Devices found: %s", devices)
    return DevicesResponse(devices=devices, count=len(devices))


@app.get("/adb/check", response_model=AdbCheckResponse, tags=["Devices"])
async def check_adb() -> AdbCheckResponse:
    executor = state.executor
    if isinstance(executor, AdbManager):
        return AdbCheckResponse(
            available=await executor.validate_adb_path(),
            adb_path=executor.adb_path,
        )
    if executor is None:
        return AdbCheckResponse(available=False)
    try:
        await executor.get_devices()
    except (ExecutionError, NotImplementedError) as exc:
        logger.warning("Executor check failed: %s", exc)
        return AdbCheckResponse(available=False)
    return AdbCheckResponse(available=True)


# ===================================================================
# Bot control
# ===================================================================


@app.post("/bot/start", response_model=StartResponse, tags=["Bot"])
async def start_bot(req: Optional[StartRequest] = None) -> StartResponse:
    controller = _controller()
    devices = req.devices if req is not None and req.devices is not None else await _discover()
    try:
        session = controller.start_bot(devices)
    except NoDevicesError as exc:
        raise HTTPException(400, str(exc))
    except AlreadyRunningError as exc:
        raise HTTPException(409, str(exc))
    return StartResponse(success=True, run_id=session.run_id, devices=list(session.devices))


@app.post("/bot/stop", response_model=StopResponse, tags=["Bot"])
async def stop_bot() -> StopResponse:
    controller = _controller()
    controller.stop_bot()
    return StopResponse(success=True, status=controller.status.value)


@app.get("/bot/status", response_model=StatusResponse, tags=["Bot"])
async def bot_status() -> StatusResponse:
    controller = _controller()
    session = controller.session
    return StatusResponse(
        status=controller.status.value,
        run_id=session.run_id if session else None,
        devices=list(session.devices) if session else [],
        started_at=session.started_at.isoformat() if session else None,
    )


@app.get("/bot/logs", tags=["Bot"])
async def bot_logs(limit: int = 100) -> Dict[str, Any]:
    entries = list(state.logs)
    if limit > 0:
        entries = entries[-limit:]
    return {"logs": entries, "count": len(entries)}


# ===================================================================
# Event stream
# ===================================================================


def _event_message(kind: str, payload: Any) -> Dict[str, Any]:
    if isinstance(payload, LogEntry):
        return {"type": "log", **payload.to_dict()}
    if isinstance(payload, RunStatus):
        return {"type": "status", "status": payload.value}
    return {"type": kind, "data": str(payload)}


async def _pump_events(ws: WebSocket, stream: EventStream) -> None:
    async for kind, payload in stream:
        await ws.send_json(_event_message(kind, payload))


async def _await_disconnect(ws: WebSocket) -> None:
    while True:
        await ws.receive_text()


@app.websocket("/events")
async def events(ws: WebSocket) -> None:
    """Send the current status, then every log entry and status change."""
    controller = _controller()
    await ws.accept()
    stream = controller.events.open_stream(maxsize=1000)
    try:
        await ws.send_json({"type": "status", "status": controller.status.value})
        pump = asyncio.create_task(_pump_events(ws, stream))
        reader = asyncio.create_task(_await_disconnect(ws))
        done, pending = await asyncio.wait({pump, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Event stream error: %s", exc)
    except WebSocketDisconnect:
        pass
    finally:
        stream.close()
        logger.debug("Event stream client disconnected")


# ===================================================================
# Entry Point
# ===================================================================

def serve(host: str = "0.0.0.0", port: int = API_PORT) -> None:
    import uvicorn

    uvicorn.run("phonebot.api:app", host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    serve()
