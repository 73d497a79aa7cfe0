"""FastAPI service exposing a live vitals session and file processing.

A single ``VitalsController`` is created lazily from the current options.
``/stream/*`` drives the camera session, ``/process`` runs a video file to
completion and ``/ws`` pushes each new live result to connected clients.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .capture import CameraFrameSource, Capture, CaptureConfig, FrameSource
from .config import VitalsOptions
from .controller import VitalsController
from .errors import (
    AdapterAuthError,
    AdapterQuotaError,
    AdapterRequestError,
    ConfigError,
    ValidationError,
)
from .result import VitalsResult

logger = logging.getLogger(__name__)


@dataclass
class ServiceState:
    options: VitalsOptions
    controller: Optional[VitalsController] = None
    latest: dict = field(default_factory=lambda: {"status": "init"})
    seq: int = 0
    progress: str = ""


class ControlModel(BaseModel):
    method: Optional[str] = Field(None, pattern=r"^(vitallens|pos|chrom|g)$")
    waveform_mode: Optional[str] = Field(None, pattern=r"^(incremental|windowed|complete)$")
    fdet_fs: Optional[float] = Field(None, gt=0.0, le=30.0)
    override_fps_target: Optional[float] = Field(None, gt=0.0, le=120.0)


class StreamStartModel(BaseModel):
    device_index: int = Field(0, ge=0)
    width: int = Field(640, gt=0)
    height: int = Field(480, gt=0)
    fps: int = Field(30, gt=0, le=120)


class ProcessModel(BaseModel):
    path: str


def options_from_env() -> VitalsOptions:
    return VitalsOptions(
        method=os.environ.get("VITALCAM_METHOD", "pos"),
        api_key=os.environ.get("VITALCAM_API_KEY") or None,
        proxy_url=os.environ.get("VITALCAM_PROXY_URL") or None,
    )


def _camera_source(cfg: CaptureConfig) -> FrameSource:
    return CameraFrameSource(Capture(cfg))


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AdapterAuthError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, AdapterQuotaError):
        return HTTPException(status_code=429, detail=str(exc))
    if isinstance(exc, AdapterRequestError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, (ConfigError, ValidationError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def make_app(
    options: Optional[VitalsOptions] = None,
    controller_factory: Callable[[VitalsOptions], VitalsController] = VitalsController,
    source_factory: Callable[[CaptureConfig], FrameSource] = _camera_source,
) -> FastAPI:
    app = FastAPI(title="vitalcam", version="0.1.0")

    state = ServiceState(options=options or options_from_env())
    loop_task: Optional[asyncio.Task] = None
    lock = asyncio.Lock()
    ws_clients: set[WebSocket] = set()

    def on_vitals(result: VitalsResult) -> None:
        state.latest = result.to_dict()
        state.seq += 1

    def on_progress(message: str) -> None:
        state.progress = message
        logger.info(message)

    def get_controller() -> VitalsController:
        if state.controller is None:
            controller = controller_factory(state.options)
            controller.vitals.subscribe(on_vitals)
            controller.file_progress.subscribe(on_progress)
            state.controller = controller
        return state.controller

    def drop_controller() -> None:
        if state.controller is not None:
            state.controller.dispose()
            state.controller = None

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - integration
        nonlocal loop_task
        loop_task = asyncio.create_task(push_loop())

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - integration
        nonlocal loop_task
        if loop_task:
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        drop_controller()

    async def push_loop() -> None:
        sent = 0
        while True:
            await asyncio.sleep(0.05)
            if not ws_clients or state.seq == sent:
                continue
            sent = state.seq
            msg = json.dumps(state.latest)
            dead: list[WebSocket] = []
            for w in ws_clients:
                try:
                    await w.send_text(msg)
                except Exception:
                    logger.warning("Dropping websocket client after failed send")
                    dead.append(w)
            for w in dead:
                ws_clients.discard(w)

    @app.get("/health")
    async def health() -> dict[str, str]:  # pragma: no cover - trivial
        return {"status": "ok"}

    @app.get("/vitals")
    async def get_vitals() -> dict:
        return dict(state.latest)

    @app.post("/control")
    async def post_control(cfg: ControlModel) -> dict:
        async with lock:
            data = cfg.model_dump(exclude_none=True)
            try:
                new_options = dataclasses.replace(state.options, **data)
            except ConfigError as e:
                raise _http_error(e) from e
            if data:
                drop_controller()
                state.options = new_options
                state.latest = {"status": "init"}
            params = dataclasses.asdict(state.options)
            params.pop("api_key", None)
            return {"status": "ok", "params": params}

    @app.post("/stream/start")
    async def stream_start(cfg: StreamStartModel) -> dict:
        async with lock:
            try:
                controller = get_controller()
                if controller.stream_processor is None:
                    controller.set_video_stream(
                        source_factory(CaptureConfig(cfg.device_index, cfg.width, cfg.height, cfg.fps))
                    )
                await controller.start_video_stream()
            except (ConfigError, ValidationError, RuntimeError) as e:
                logger.exception("Failed to start stream")
                raise _http_error(e) from e
            return {"status": "running", "method": state.options.method}

    @app.post("/stream/pause")
    async def stream_pause() -> dict:
        async with lock:
            if state.controller is not None:
                state.controller.pause_video_stream()
            return {"status": "paused"}

    @app.post("/stream/stop")
    async def stream_stop() -> dict:
        async with lock:
            if state.controller is not None:
                state.controller.stop_video_stream()
            state.latest = {"status": "stopped"}
            return {"status": "stopped"}

    @app.post("/process")
    async def post_process(payload: ProcessModel) -> dict:
        if not Path(payload.path).is_file():
            raise HTTPException(status_code=404, detail=f"No such file: {payload.path}")
        async with lock:
            try:
                result = await get_controller().process_video_file(payload.path)
            except Exception as e:
                logger.exception("Processing %s failed", payload.path)
                raise _http_error(e) from e
        return result.to_dict()

    @app.websocket("/ws")
    async def ws_vitals(ws: WebSocket) -> None:  # pragma: no cover - integration
        await ws.accept()
        ws_clients.add(ws)
        try:
            while True:
                # keep alive; updates are pushed from loop
                await ws.receive_text()
        except WebSocketDisconnect:
            ws_clients.discard(ws)

    return app


def setup_logging(logs_dir: Path = Path("logs"), level: int = logging.INFO) -> None:
    """Log to ``logs/app.log`` and stderr, and dump tracebacks on crashes."""
    import faulthandler

    fmt = "%(asctime)s %(levelname)s %(name)s %(message)s"
    try:
        logs_dir.mkdir(exist_ok=True)
        logging.basicConfig(
            level=level,
            format=fmt,
            handlers=[
                logging.FileHandler(logs_dir / "app.log", encoding="utf-8"),
                logging.StreamHandler(),
            ],
        )
        fh = (logs_dir / "faulthandler.log").open("w")
        faulthandler.enable(fh)
    except OSError:
        logging.basicConfig(level=level, format=fmt)
        logger.warning("Could not write logs to %s; logging to stderr only", logs_dir)
        faulthandler.enable()


def main(host: str = "127.0.0.1", port: int = 8000, debug: bool = False) -> None:  # pragma: no cover - manual run helper
    import uvicorn

    setup_logging(level=logging.DEBUG if debug else logging.INFO)
    logger.info("Serving on %s:%d", host, port)
    uvicorn.run(make_app(), host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
