"""
Server-side Realtime Relay

Bridges a client websocket to the OpenAI realtime websocket API with the
server's own key. Client text and audio are forwarded upstream; upstream
audio and allow-listed events are forwarded to the client; function calls
are answered on the server against the session's document.

Client protocol:
    -> {"type": "text", "content": "..."}
    -> {"type": "audio", "audio": "<base64 g711_ulaw>"}
    <- {"type": "audio", "audio": "<base64>"}
    <- allow-listed realtime events, verbatim
    <- {"error": "..."}
"""

import asyncio
from typing import Any, Callable, Protocol

import orjson
import structlog
from fastapi import WebSocketDisconnect
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from docvoice.config import Settings, settings as default_settings
from .dispatch import EventDispatcher
from .protocol import (
    InboundEventKind,
    InputAudioBufferAppend,
    LOGGABLE_EVENT_TYPES,
    OutboundMessage,
    RealtimeSessionConfig,
    ResponseCreate,
    SessionUpdate,
    TurnDetection,
    encode,
    user_text_message,
)
from .registry import RelaySession
from .tools import RAG_AGENT, DocumentSearch, NullDocumentSearch, rag_tools

logger = structlog.get_logger()

UPSTREAM_ERROR_MESSAGE = "Error connecting to OpenAI"


class ClientSocket(Protocol):
    """The subset of a server websocket the relay uses."""

    async def receive_text(self) -> str: ...

    async def send_text(self, data: str) -> None: ...


class RealtimeBridge:
    """Relays one client websocket for the lifetime of the connection."""

    def __init__(
        self,
        session: RelaySession,
        client: ClientSocket,
        search: DocumentSearch | None = None,
        config: Settings | None = None,
        connect: Callable[..., Any] = ws_connect,
    ) -> None:
        self.session = session
        self.client = client
        self.config = config or default_settings
        self._connect = connect
        self.dispatcher = EventDispatcher(
            self.send_upstream,
            rag_tools(search or NullDocumentSearch(), session.document_id),
            transcript=session.transcript,
            label=session.session_id,
        )

    def initial_session_update(self) -> SessionUpdate:
        return SessionUpdate(
            session=RealtimeSessionConfig(
                instructions=RAG_AGENT.instructions,
                voice=self.config.realtime_voice,
                input_audio_format=self.config.relay_audio_format,
                output_audio_format=self.config.relay_audio_format,
                input_audio_transcription={"model": self.config.transcription_model},
                turn_detection=TurnDetection(),
                tools=RAG_AGENT.session_tools(),
                tool_choice="auto",
                temperature=self.config.relay_temperature,
            )
        )

    async def run(self) -> None:
        """Relay until either side closes. Logs the transcript on exit."""
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            async with self._connect(
                self.config.realtime_ws_url, additional_headers=headers
            ) as upstream:
                logger.info("Connected to OpenAI Realtime API", session_id=self.session.session_id)
                self.session.upstream = upstream
                await self.send_upstream(self.initial_session_update())
                self.session.upstream_ready = True
                await self._relay()
        except (OSError, InvalidHandshake, TimeoutError) as e:
            logger.error(
                "Error in OpenAI WebSocket",
                session_id=self.session.session_id,
                error=str(e),
            )
            await self._send_client({"error": UPSTREAM_ERROR_MESSAGE})
        finally:
            self.session.upstream_ready = False
            self.session.upstream = None
            logger.info(
                "Relay closed",
                session_id=self.session.session_id,
                transcript=self.session.transcript.text,
            )

    async def _relay(self) -> None:
        tasks = {
            asyncio.create_task(self._pump_client()),
            asyncio.create_task(self._pump_upstream()),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    async def send_upstream(self, message: OutboundMessage | dict[str, Any]) -> bool:
        upstream = self.session.upstream
        if upstream is None:
            logger.warning("OpenAI WebSocket not ready yet", session_id=self.session.session_id)
            return False
        try:
            await upstream.send(encode(message))
        except ConnectionClosed as e:
            logger.warning("Upstream closed while sending", error=str(e))
            return False
        return True

    async def handle_client_message(self, raw: str) -> None:
        """Translate one client message into upstream events."""
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning("Error processing client message", error=str(e))
            return
        if not isinstance(data, dict):
            return

        message_type = data.get("type")
        if message_type == "text":
            content = data.get("content")
            if content:
                await self.send_upstream(user_text_message(str(content)))
                await self.send_upstream(ResponseCreate())
        elif message_type == "audio":
            audio = data.get("audio")
            if audio:
                await self.send_upstream(InputAudioBufferAppend(audio=audio))
        else:
            logger.debug("Ignoring client message", type=message_type)

    async def handle_upstream_frame(self, frame: str | bytes) -> None:
        """Dispatch one upstream event and forward what the client should see."""
        event = await self.dispatcher.handle_frame(frame)
        if event is None:
            return

        if event.kind == InboundEventKind.AUDIO_DELTA and event.type == "response.audio.delta":
            if event.delta:
                await self._send_client({"type": "audio", "audio": event.delta})

        if event.type in LOGGABLE_EVENT_TYPES:
            await self._send_client(event.payload)

    async def _pump_client(self) -> None:
        while True:
            try:
                raw = await self.client.receive_text()
            except WebSocketDisconnect:
                logger.info("Client disconnected", session_id=self.session.session_id)
                return
            except (RuntimeError, KeyError):
                # Binary frame or closed socket
                return
            await self.handle_client_message(raw)

    async def _pump_upstream(self) -> None:
        try:
            async for frame in self.session.upstream:
                await self.handle_upstream_frame(frame)
        except ConnectionClosed as e:
            logger.info("OpenAI WebSocket closed", session_id=self.session.session_id, reason=str(e))

    async def _send_client(self, data: dict[str, Any]) -> None:
        try:
            await self.client.send_text(orjson.dumps(data).decode())
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug("Client socket closed", error=str(e))


__all__ = ["RealtimeBridge", "ClientSocket", "UPSTREAM_ERROR_MESSAGE"]
