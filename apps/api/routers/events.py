"""Live notification push: Server-Sent Events and WebSocket transports"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from auth import token_expiry
from database import get_session
from dependencies import authenticate_token, get_registry
from exceptions import Unauthorized
from models import enum_value
from services.connection_registry import (
    ConnectionRegistry, Identity, QueueConnection, WebSocketConnection,
)
from validators.business_rules import get_billing_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Events"])


def sse_frame(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _bearer(request: Request, token: Optional[str]) -> Optional[str]:
    # EventSource cannot set headers, so the query string is accepted too
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return token


async def event_stream(
    request: Request,
    registry: ConnectionRegistry,
    identity: Identity,
    expires_at: Optional[datetime],
    heartbeat: float,
):
    connection = QueueConnection()
    handle = await registry.register(identity, connection, expires_at=expires_at)
    try:
        yield sse_frame("hello", {"user_id": identity.user_id, "role": identity.role})
        while True:
            if await request.is_disconnected():
                break
            try:
                item = await asyncio.wait_for(connection.queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield sse_frame("ping", {"ts": datetime.utcnow().isoformat()})
                continue
            if item is QueueConnection.CLOSED:
                break
            event, data = item
            yield sse_frame(event, data)
    finally:
        await registry.unregister(handle)


@router.get("/events")
async def events(
    request: Request,
    token: Optional[str] = Query(None),
    session: Session = Depends(get_session),
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Stream `notification` events for the authenticated caller"""
    user, payload = await run_in_threadpool(authenticate_token, _bearer(request, token), session)
    identity = Identity(user_id=user.id, role=enum_value(user.role), name=user.full_name)

    return StreamingResponse(
        event_stream(
            request,
            registry,
            identity,
            token_expiry(payload),
            get_billing_rules().SSE_HEARTBEAT_SECONDS,
        ),
        media_type="text/event-stream",
    )


@router.websocket("/ws/notifications")
async def notifications_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    session: Session = Depends(get_session),
):
    """WebSocket alternative to /events for clients that prefer it"""
    try:
        user, payload = await run_in_threadpool(authenticate_token, token, session)
    except Unauthorized:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.registry
    identity = Identity(user_id=user.id, role=enum_value(user.role), name=user.full_name)

    await websocket.accept()
    handle = await registry.register(identity, WebSocketConnection(websocket), expires_at=token_expiry(payload))
    try:
        await websocket.send_json({
            "type": "connection",
            "status": "connected",
            "user_id": user.id,
        })
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.debug(f"WebSocket for user {identity.user_id} disconnected")
    finally:
        await registry.unregister(handle)
