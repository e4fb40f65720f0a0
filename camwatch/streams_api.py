# camwatch/streams_api.py
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .errors import (
    AlreadyRunning, AtCapacity, InvalidQuality, InvalidStreamId,
    LaunchFailed, StreamError, StreamNotFound, VendorError,
)
from .models import Camera, CameraStatus, StreamRecord
from .presets import PRESETS, preset_names
from .registry import StreamRegistry
from .schemas import PresetOut, StartStreamIn, StreamRecordOut
from .stream import StreamStatus
from .vendor import VendorClient

log = logging.getLogger("streams")

router = APIRouter(prefix="/api/streams", tags=["streams"])
ws_router = APIRouter(tags=["streams"])

_STATUS_FOR = {
    InvalidStreamId: 400,
    InvalidQuality: 400,
    VendorError: 400,
    StreamNotFound: 404,
    AlreadyRunning: 409,
    LaunchFailed: 502,
    AtCapacity: 503,
}


def http_error(e: StreamError) -> HTTPException:
    status = next((code for cls, code in _STATUS_FOR.items() if isinstance(e, cls)), 500)
    return HTTPException(status, detail={"error": str(e), "code": e.code})


def _not_found(stream_id: str) -> HTTPException:
    return HTTPException(404, detail={"error": f"Stream {stream_id} not found", "code": StreamNotFound.code})


def get_registry(request: Request) -> StreamRegistry:
    return request.app.state.streams


def get_vendor(request: Request) -> VendorClient:
    vendor = getattr(request.app.state, "vendor", None)
    if vendor is None:
        vendor = request.app.state.vendor = VendorClient()
    return vendor


# ── queries ──────────────────────────────────────────────────────────────────
@router.get("")
async def list_streams(reg: StreamRegistry = Depends(get_registry)):
    return {"streams": reg.list_all(), "stats": reg.stats()}


@router.get("/stats")
async def stream_stats(reg: StreamRegistry = Depends(get_registry)):
    return {"stats": reg.stats()}


@router.get("/presets/list", response_model=list[PresetOut])
async def list_presets():
    return [
        PresetOut(
            name=p.name,
            resolution=f"{p.width}x{p.height}",
            videoBitrate=p.maxrate,
            audioBitrate=p.audio_bitrate,
        )
        for p in (PRESETS[n] for n in preset_names())
    ]


@router.get("/history", response_model=list[StreamRecordOut])
async def stream_history(limit: int = 50, db: AsyncSession = Depends(get_db)):
    limit = max(1, min(limit, 500))
    res = await db.execute(select(StreamRecord).order_by(StreamRecord.started_at.desc()).limit(limit))
    return res.scalars().all()


@router.get("/{stream_id}")
async def get_stream(stream_id: str, reg: StreamRegistry = Depends(get_registry)):
    snap = reg.get(stream_id)
    if snap is None:
        raise _not_found(stream_id)
    return {"stream": snap}


@router.get("/{stream_id}/playlist")
async def get_playlist(stream_id: str, reg: StreamRegistry = Depends(get_registry)):
    snap = reg.get(stream_id)
    if snap is None:
        raise _not_found(stream_id)
    if snap["status"] != StreamStatus.running.value:
        raise HTTPException(400, detail={
            "error": "Stream is not running",
            "code": "STREAM_NOT_RUNNING",
            "status": snap["status"],
        })
    return {"streamId": stream_id, "playlistUrl": snap["playlistUrl"], "status": snap["status"]}


# ── lifecycle ────────────────────────────────────────────────────────────────
async def _resolve_source(body: StartStreamIn, camera: Optional[Camera], vendor: VendorClient) -> str:
    if body.rtspUrl:
        return body.rtspUrl
    if camera is not None and camera.rtsp_url:
        return camera.rtsp_url
    if camera is not None and camera.vendor_device_id:
        try:
            url = await vendor.get_live_stream_url_async(camera.vendor_device_id, "main")
        except VendorError as e:
            log.error("Failed to get RTSP URL for camera %s: %s", camera.id, e)
            raise HTTPException(400, detail={"error": "No RTSP URL available for camera", "code": VendorError.code})
        log.info("RTSP URL for camera %s issued by vendor API", camera.id)
        return url
    raise HTTPException(400, detail={"error": "RTSP URL required for streaming", "code": "RTSP_URL_REQUIRED"})


@router.post("/start", status_code=201)
async def start_stream(
    body: StartStreamIn,
    reg: StreamRegistry = Depends(get_registry),
    vendor: VendorClient = Depends(get_vendor),
    db: AsyncSession = Depends(get_db),
):
    camera: Optional[Camera] = None
    if body.cameraId:
        camera = await db.get(Camera, body.cameraId)
        if camera is None:
            raise HTTPException(404, detail={"error": "Camera not found", "code": "CAMERA_NOT_FOUND"})

    source = await _resolve_source(body, camera, vendor)
    quality = body.quality or (camera.default_quality if camera else None)
    now_ms = int(time.time() * 1000)
    if body.streamId:
        stream_id = body.streamId
    elif camera is not None:
        stream_id = f"camera_{camera.id}_{now_ms}"
    else:
        stream_id = f"stream_{now_ms}"

    try:
        stream = await reg.start(stream_id, source, quality, {"cameraId": body.cameraId})
    except StreamError as e:
        if camera is not None and isinstance(e, LaunchFailed):
            camera.status = CameraStatus.error
            await db.commit()
        log.error("Failed to start stream %s: %s", stream_id, e)
        raise http_error(e)

    if camera is not None:
        camera.status = CameraStatus.streaming
        camera.last_seen = datetime.now(timezone.utc)
    await db.merge(StreamRecord(
        id=stream.id,
        camera_id=camera.id if camera else None,
        rtsp_url=source,
        quality=stream.quality,
        status=stream.status.value,
        started_at=datetime.now(timezone.utc),
        extra_json={"cameraName": camera.name if camera else None},
    ))
    await db.commit()

    snap = stream.snapshot()
    return {
        "message": "Stream started successfully",
        "stream": {
            "id": stream.id,
            "cameraId": body.cameraId,
            "cameraName": camera.name if camera else None,
            "quality": stream.quality,
            "playlistUrl": stream.playlist_url,
            "status": snap["status"],
            "startTime": snap["startTime"],
        },
    }


async def _mark_record(db: AsyncSession, stream_id: str, status: str, error_count: int = 0) -> None:
    await db.execute(
        update(StreamRecord)
        .where(StreamRecord.id == stream_id)
        .values(status=status, error_count=error_count, stopped_at=datetime.now(timezone.utc))
    )
    await db.commit()


@router.post("/stop-all")
async def stop_all_streams(reg: StreamRegistry = Depends(get_registry), db: AsyncSession = Depends(get_db)):
    ids = [s["id"] for s in reg.list_all()]
    stopped = await reg.stop_all()
    if ids:
        await db.execute(
            update(StreamRecord)
            .where(StreamRecord.id.in_(ids))
            .values(status=StreamStatus.stopped.value, stopped_at=datetime.now(timezone.utc))
        )
        await db.commit()
    return {"message": f"Stopped {stopped} streams", "stoppedCount": stopped}


@router.post("/{stream_id}/stop")
async def stop_stream(stream_id: str, reg: StreamRegistry = Depends(get_registry), db: AsyncSession = Depends(get_db)):
    snap = reg.get(stream_id)
    if not await reg.stop(stream_id):
        raise _not_found(stream_id)
    snap = snap or {}
    await _mark_record(db, stream_id, StreamStatus.stopped.value, snap.get("stats", {}).get("errors", 0))
    camera_id = snap.get("cameraId")
    if camera_id:
        await db.execute(update(Camera).where(Camera.id == camera_id).values(status=CameraStatus.online))
        await db.commit()
    return {"message": "Stream stopped successfully", "streamId": stream_id}


@router.post("/{stream_id}/restart")
async def restart_stream(stream_id: str, reg: StreamRegistry = Depends(get_registry)):
    try:
        stream = await reg.restart(stream_id)
    except StreamError as e:
        raise http_error(e)
    return {"message": "Stream restarted successfully", "stream": stream.snapshot()}


# ── real-time channel ────────────────────────────────────────────────────────
@ws_router.websocket("/ws")
async def stream_events(websocket: WebSocket):
    reg: StreamRegistry = websocket.app.state.streams
    await websocket.accept()
    log.debug("ws client connected: %s", websocket.client)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "data": {"message": "Invalid message"}})
                continue

            kind = msg.get("type")
            stream_id = msg.get("streamId")
            if kind == "subscribe_stream" and isinstance(stream_id, str) and stream_id:
                reg.subscribe(stream_id, websocket)
            elif kind == "unsubscribe_stream":
                reg.unsubscribe(websocket, stream_id if isinstance(stream_id, str) else None)
            elif kind == "ping":
                await websocket.send_json({"type": "pong", "timestamp": int(time.time() * 1000)})
            else:
                await websocket.send_json({"type": "error", "data": {"message": f"Unknown message type: {kind}"}})
    except WebSocketDisconnect:
        log.debug("ws client disconnected: %s", websocket.client)
    finally:
        reg.unsubscribe(websocket)
