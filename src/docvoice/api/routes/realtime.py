"""
Realtime Routes

Ephemeral credential minting for WebRTC clients and the websocket relay for
clients that stream audio through the server.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket
from fastapi.requests import HTTPConnection
from fastapi.responses import ORJSONResponse
from fastapi.websockets import WebSocketState
from pydantic import BaseModel

from docvoice.api.auth import TokenPayload, get_current_user, verify_token
from docvoice.core.errors import UpstreamError
from docvoice.integrations.openai_realtime import OpenAIRealtimeClient
from docvoice.realtime.bridge import RealtimeBridge
from docvoice.realtime.registry import SessionRegistry
from docvoice.realtime.tools import DocumentSearch

logger = structlog.get_logger()

router = APIRouter()
ws_router = APIRouter()


# ══════════════════════════════════════════════════════════════
# Dependencies
# ══════════════════════════════════════════════════════════════


def get_registry(connection: HTTPConnection) -> SessionRegistry:
    return connection.app.state.registry


def get_openai_client(connection: HTTPConnection) -> OpenAIRealtimeClient:
    return connection.app.state.openai_client


def get_document_search(connection: HTTPConnection) -> DocumentSearch:
    return connection.app.state.document_search


# ══════════════════════════════════════════════════════════════
# Credential Minting
# ══════════════════════════════════════════════════════════════


class SessionRequest(BaseModel):
    documentId: str | None = None


@router.post("/session")
async def create_realtime_session(
    body: SessionRequest | None = None,
    user: TokenPayload = Depends(get_current_user),
    client: OpenAIRealtimeClient = Depends(get_openai_client),
):
    """
    Mint an ephemeral realtime credential.

    Returns OpenAI's session object; clients use client_secret.value to
    negotiate their own WebRTC connection.
    """
    try:
        data = await client.create_session()
    except UpstreamError as e:
        return ORJSONResponse({"error": e.message}, status_code=e.status_code)

    logger.info(
        "Realtime session issued",
        session_id=data["id"],
        document_id=body.documentId if body else None,
        user_id=user.userId,
    )
    return data


@router.get("/stats")
async def relay_stats(
    user: TokenPayload = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Relay session statistics."""
    return registry.get_stats()


# ══════════════════════════════════════════════════════════════
# WebSocket Relay
# ══════════════════════════════════════════════════════════════


@ws_router.websocket("/realtime")
async def realtime_relay(
    websocket: WebSocket,
    documentId: str | None = Query(None),
    userId: str | None = Query(None),
    token: str | None = Query(None),
    registry: SessionRegistry = Depends(get_registry),
    search: DocumentSearch = Depends(get_document_search),
):
    """
    Relay a client to the OpenAI realtime websocket API.

    Protocol:
    1. Client connects to /ws/realtime?documentId=<id>&userId=<id>&token=<jwt>
    2. Client sends {"type": "text"} or {"type": "audio"} messages
    3. Server sends {"type": "audio"} chunks and allow-listed events
    """
    await websocket.accept()

    try:
        verify_token(token or "")
    except HTTPException as e:
        await websocket.send_json({"error": e.detail})
        await websocket.close(code=1008)
        return

    if not documentId or not userId:
        await websocket.send_json({"error": "Missing documentId or userId"})
        await websocket.close()
        return

    session = await registry.create(user_id=userId, document_id=documentId)
    try:
        await RealtimeBridge(session, websocket, search).run()
    finally:
        await registry.delete(session.session_id)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()
        logger.info("Client disconnected", session_id=session.session_id)
