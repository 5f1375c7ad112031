from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy import or_
from sqlalchemy.orm import Session
from starlette.websockets import WebSocketState

from ..db import SessionLocal
from .. import models
from ..feed import ChangeEvent, SubscriptionGroup
from ..identity import Viewer
from ..services import Services
from .auth import viewer_from_token

router = APIRouter()
logger = logging.getLogger("lodgely.ws")


def _get_token_from_ws(websocket: WebSocket) -> Optional[str]:
    # Prefer Authorization header if present
    auth = websocket.headers.get("authorization")
    if auth:
        parts = auth.split(" ", 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    # Fallback to query param ?token=
    return websocket.query_params.get("token") or None


def _authenticate(token: str) -> tuple[Viewer, Set[int]]:
    db: Session = SessionLocal()
    try:
        viewer = viewer_from_token(db, token)
        ids = db.query(models.Conversation.id).filter(
            or_(models.Conversation.client_id == viewer.id, models.Conversation.owner_id == viewer.id)
        )
        return viewer, {row[0] for row in ids}
    finally:
        db.close()


def _frame(event: ChangeEvent) -> str:
    return json.dumps(
        {"type": "change", "table": event.table, "event": event.type, "row": event.row},
        default=str,
    )


def _subscribe_viewer(services: Services, viewer: Viewer, conversation_ids: Set[int], send: Any) -> SubscriptionGroup:
    """Booking requests, conversations and messages visible to the viewer, plus their own properties."""

    def _is_participant(row: Dict[str, Any]) -> bool:
        if viewer.id in (row.get("client_id"), row.get("owner_id")):
            # Evaluated at publish time, so the first message of a new thread is already in scope
            conversation_ids.add(row["id"])
            return True
        return False

    group = SubscriptionGroup()
    group.add(services.bookings.subscribe(viewer.id, send))
    group.add(services.store.subscribe("conversations", _is_participant, send, name=f"ws:conversations:{viewer.id}"))
    group.add(
        services.store.subscribe(
            "messages",
            lambda row: row.get("conversation_id") in conversation_ids,
            send,
            name=f"ws:messages:{viewer.id}",
        )
    )
    group.add(
        services.store.subscribe(
            "properties",
            lambda row: row.get("owner_id") == viewer.id,
            send,
            name=f"ws:properties:{viewer.id}",
        )
    )
    return group


@router.websocket("/changes")
async def changes(websocket: WebSocket) -> None:
    """
    Per-viewer change feed.
    - Auth: JWT required via Authorization: Bearer or ?token=
    - Server -> Client: {"type": "change", "table", "event": INSERT|UPDATE|DELETE, "row"}
    - Client -> Server: {"type": "ping"} answered with {"type": "pong"}; anything else is ignored
    """
    token = _get_token_from_ws(websocket)
    if not token:
        await websocket.close(code=1008)  # Policy violation
        return
    try:
        viewer, conversation_ids = _authenticate(token)
    except HTTPException:
        await websocket.close(code=1008)
        return

    services: Services = websocket.app.state.services
    await websocket.accept()

    async def _send(event: ChangeEvent) -> None:
        if websocket.application_state == WebSocketState.CONNECTED:
            await websocket.send_text(_frame(event))

    group = _subscribe_viewer(services, viewer, conversation_ids, _send)
    logger.info("ws.connected", extra={"user_id": viewer.id, "role": viewer.role})
    async with group:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break

            try:
                payload = json.loads(raw)
            except ValueError:
                await _send_ws_error(websocket, "invalid_json", "Payload must be JSON")
                continue
            if isinstance(payload, dict) and payload.get("type") == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))

    logger.info("ws.disconnected", extra={"user_id": viewer.id})


async def _send_ws_error(ws: WebSocket, code: str, message: str) -> None:
    try:
        await ws.send_text(json.dumps({"type": "error", "code": code, "message": message}))
    except RuntimeError:
        await ws.close(code=1008)
