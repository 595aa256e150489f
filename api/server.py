"""FastAPI server exposing the command bridge and the gesture pipeline."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from command_controller.action_settings import normalize_session_id
from command_controller.bridge import CommandBroker
from command_controller.errors import BridgeError, StateValidationError
from command_controller.router import ActionRouter
from gesture_module.workflow import GesturePipeline
from utils.log_utils import tprint
from utils.settings_store import bridge_ping_interval_secs

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


class BridgeCommandRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    sessionId: Optional[str] = None
    targetSessionId: Optional[str] = None
    command: Optional[dict[str, Any]] = None


class BridgeResultRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    sessionId: Optional[str] = None
    commandId: Optional[Any] = None
    id: Optional[Any] = None
    result: Optional[Any] = None


class FrameRequest(BaseModel):
    timestamp: Optional[float] = None
    hands: list[dict[str, Any]] = Field(default_factory=list)


class CaptureRequest(BaseModel):
    detector_info: Optional[dict[str, Any]] = None


class LabelRequest(BaseModel):
    label: str


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def build_bridge_router(broker: CommandBroker) -> APIRouter:
    router = APIRouter(prefix="/api/bridge")

    @router.get("/status")
    async def bridge_status(session: Optional[str] = None):
        return broker.status(session)

    @router.get("/stream")
    async def bridge_stream(session: Optional[str] = None):
        sid = normalize_session_id(session)
        channel = broker.connect(sid)

        async def _events():
            try:
                async for event in channel.events(bridge_ping_interval_secs()):
                    yield event.encode()
            finally:
                broker.disconnect(sid, channel)

        return StreamingResponse(_events(), media_type="text/event-stream", headers=_SSE_HEADERS)

    @router.post("/command")
    async def bridge_command(req: BridgeCommandRequest):
        sid = normalize_session_id(req.sessionId or req.targetSessionId)
        if broker.status(sid)["helpersConnected"] == 0:
            return _error(409, f'No target helper connected for session "{sid}".')
        if not req.command or not req.command.get("action"):
            return _error(400, "Missing command.action.")

        command = broker.prepare_command(sid, req.command)
        try:
            result = await broker.dispatch(sid, command)
        except BridgeError as exc:
            return _error(exc.status, str(exc))
        return {"ok": True, "sessionId": sid, "commandId": command["id"], "result": result}

    @router.post("/result")
    async def bridge_result(req: BridgeResultRequest):
        sid = normalize_session_id(req.sessionId)
        command_id = str(req.commandId or req.id or "").strip()
        if not command_id:
            return _error(400, "Missing commandId.")

        result = req.result if "result" in req.model_fields_set else req.model_dump(exclude_unset=True)
        if not broker.resolve(sid, command_id, result):
            return _error(404, f'No pending command found for id "{command_id}" in session "{sid}".')
        return {"ok": True, "sessionId": sid, "commandId": command_id}

    return router


def build_pose_router(pipeline: GesturePipeline) -> APIRouter:
    router = APIRouter(prefix="/api")
    library = pipeline.library

    def _check_slot(slot: int) -> None:
        if not 0 <= slot < library.max_poses:
            raise HTTPException(status_code=404, detail=f"Unknown pose slot {slot}.")

    @router.post("/frames")
    async def process_frame(req: FrameRequest):
        timestamp = req.timestamp if req.timestamp is not None else time.time() * 1000
        return pipeline.process_frame(req.hands, timestamp).to_dict()

    @router.get("/poses")
    async def list_poses():
        return {**library.export_state(), "sampleCounts": library.sample_counts()}

    @router.post("/poses/import")
    async def import_poses(request: Request):
        try:
            raw = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body.")
        try:
            state = library.import_state(raw)
        except StateValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {**state, "sampleCounts": library.sample_counts()}

    @router.get("/poses/snapshots")
    async def list_snapshots():
        return {"items": [summary.to_dict() for summary in library.list_snapshots()]}

    @router.post("/poses/snapshots/{snapshot_id}/restore")
    async def restore_snapshot(snapshot_id: str):
        if not library.restore_snapshot(snapshot_id):
            raise HTTPException(status_code=404, detail=f"Unknown snapshot {snapshot_id}.")
        return {"status": "ok", "labels": library.slot_labels(), "sampleCounts": library.sample_counts()}

    @router.post("/poses/{slot}/capture")
    async def capture_pose(slot: int, req: Optional[CaptureRequest] = None):
        _check_slot(slot)
        try:
            sample = pipeline.capture_primary(slot, req.detector_info if req else None)
        except LookupError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return {"status": "ok", "sampleId": sample.sample_id, "sampleCounts": library.sample_counts()}

    @router.post("/poses/{slot}/label")
    async def label_pose(slot: int, req: LabelRequest):
        _check_slot(slot)
        return {"status": "ok", "label": library.set_slot_label(slot, req.label)}

    @router.post("/poses/{slot}/clear")
    async def clear_pose(slot: int):
        _check_slot(slot)
        library.clear_slot(slot)
        return {"status": "ok", "sampleCounts": library.sample_counts()}

    return router


def build_router_routes(action_router: ActionRouter) -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/availability")
    async def availability():
        return await action_router.check_availability()

    @router.get("/settings")
    async def get_settings():
        return action_router.settings.to_dict()

    @router.post("/settings")
    async def update_settings(request: Request):
        try:
            patch = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body.")
        if not isinstance(patch, dict):
            raise HTTPException(status_code=400, detail="Settings patch must be an object.")
        return action_router.update_settings(patch).to_dict()

    return router


def create_app(
    broker: CommandBroker | None = None,
    pipeline: GesturePipeline | None = None,
    router: ActionRouter | None = None,
) -> FastAPI:
    broker = broker or CommandBroker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        broker.shutdown()

    app = FastAPI(title="Gesture Bridge API", version="0.2.0", lifespan=lifespan)
    app.state.broker = broker
    app.state.pipeline = pipeline
    app.state.router = router

    # Helpers are injected into arbitrary pages, so any origin may connect.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_bridge_router(broker))
    if pipeline is not None:
        app.include_router(build_pose_router(pipeline))
    if router is not None:
        app.include_router(build_router_routes(router))

    @app.get("/", response_class=HTMLResponse)
    def root():
        return "<html><body><h1>Gesture Bridge API</h1><p>Status: OK</p></body></html>"

    tprint(f"[API] App ready (pipeline={'on' if pipeline else 'off'}, router={'on' if router else 'off'})")
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.server:create_app", factory=True, host="127.0.0.1", port=4173)
