"""Sync API router: the unary HTTP binding and the real-time WebSocket binding.

Both bindings run the same merge: upsert the client's rows, return every
row changed since its watermark.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from collabtable.auth import check_authorization, get_device_id, require_password
from collabtable.config import config
from collabtable.errors import MergeError
from collabtable.merge import MergeEngine
from collabtable.models import MessageEnvelope, SyncRequest, SyncResponse

logger = logging.getLogger("collabtable.sync")

# WebSocket close code for policy violation; clients read it as "bad password".
WS_UNAUTHORIZED = 1008

router = APIRouter(prefix="/api", tags=["sync"])

engine = MergeEngine(reject_stale_writes=config.reject_stale_writes)


def get_engine() -> MergeEngine:
    return engine


@router.post("/sync", response_model=SyncResponse, dependencies=[Depends(require_password)])
async def sync(
    payload: SyncRequest,
    device_id: str | None = Depends(get_device_id),
    merge_engine: MergeEngine = Depends(get_engine),
):
    """Apply the client's changes and return the server delta since its watermark."""
    try:
        return await merge_engine.apply_and_diff(payload, device_id)
    except MergeError:
        return JSONResponse(status_code=500, content={"error": "Sync failed"})


@router.websocket("/ws")
async def sync_socket(websocket: WebSocket, merge_engine: MergeEngine = Depends(get_engine)):
    await websocket.accept()
    if check_authorization(websocket.headers.get("authorization")) is not None:
        await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
        return

    device_id = (websocket.headers.get("x-device-id") or "").strip() or None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                envelope = MessageEnvelope.model_validate_json(raw)
            except ValidationError:
                await _send_error(websocket, "Invalid message")
                continue

            if envelope.type == "ping":
                await websocket.send_json({"type": "pong", "id": envelope.id})
            elif envelope.type == "sync":
                try:
                    request = SyncRequest.model_validate(envelope.payload or {})
                except ValidationError:
                    await _send_error(websocket, "Invalid message")
                    continue
                try:
                    response = await merge_engine.apply_and_diff(request, device_id)
                except MergeError:
                    await _send_error(websocket, "Sync failed")
                    continue
                reply = MessageEnvelope(id=envelope.id, type="syncResponse", payload=response.to_wire())
                await websocket.send_json(reply.to_wire())
            else:
                logger.debug(f"Ignoring WS message of type {envelope.type!r}")
    except WebSocketDisconnect:
        logger.debug("WS sync client disconnected")


async def _send_error(websocket: WebSocket, message: str):
    await websocket.send_json({"type": "error", "payload": {"message": message}})
