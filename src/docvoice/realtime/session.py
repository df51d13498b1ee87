"""
Realtime Voice Session

Owns the lifecycle of one voice session: connecting with an ephemeral
credential, recording, mode changes, document context and recovery from
transport loss.

States: idle -> connecting -> connected -> recording -> connected ...
        connected -> failed/reconnecting -> connecting ...
An explicit disconnect returns to idle and suppresses reconnection until
connect() is called again.
"""

import asyncio
from typing import Any, Protocol

import structlog

from docvoice.config import Settings, settings as default_settings
from docvoice.core.errors import (
    CredentialError,
    EncodeError,
    MicrophonePermissionError,
    TransportError,
)
from docvoice.core.models import (
    ConnectionStatus,
    ErrorKind,
    PlaybackBlocked,
    SessionError,
    SessionMessage,
    SessionState,
)
from docvoice.integrations.backend import DocumentContent, RealtimeSessionInfo
from .context import ContextSynchronizer, format_document_for_voice
from .dispatch import EventDispatcher, ToolHandler
from .events import EventStream
from .media import AudioOutput, NullPlaybackSink
from .protocol import (
    InboundEvent,
    InputAudioBufferClear,
    InputAudioBufferCommit,
    OutboundMessage,
    ResponseCreate,
    encode,
    user_text_message,
)
from .reconnect import ReconnectionPolicy
from .transport import ICE_LOST_STATES, TransportEstablisher, TransportHandles

logger = structlog.get_logger()

RAG_INDICATOR = "(Response based on your document)"
RECONNECT_EXHAUSTED_MESSAGE = "Failed to reconnect after {attempts} attempts"


class CredentialProvider(Protocol):
    async def create_realtime_session(self, document_id: str | None = None) -> RealtimeSessionInfo: ...


class DocumentSource(Protocol):
    async def get_document_content(self, document_id: str) -> DocumentContent: ...


class VoiceSession:
    """
    Client side of a realtime voice conversation.

    Observers subscribe to independent streams:
        on_message: transcripts and assistant text
        on_error: SessionError for every fatal or surfaced condition
        on_status_change: True when connected, False otherwise
        on_playback_blocked: remote audio needs a user gesture to play
        on_event: allow-listed raw events for logging

    Usage:
        session = VoiceSession(BackendClient(token=token), document_id=doc_id)
        session.on_message.subscribe(print)
        await session.connect()
        await session.start_recording()
        await session.stop_recording()
        await session.disconnect()
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        establisher: TransportEstablisher | None = None,
        output: AudioOutput | None = None,
        config: Settings | None = None,
        document_id: str | None = None,
        instructions: str | None = None,
        tools: dict[str, ToolHandler] | None = None,
        tool_definitions: list[dict[str, Any]] | None = None,
        reconnection: ReconnectionPolicy | None = None,
    ) -> None:
        self.config = config or default_settings
        self.credentials = credentials
        self.establisher = establisher or TransportEstablisher(self.config)
        self.output = output or NullPlaybackSink()
        self.document_id = document_id
        self.state = SessionState()

        self.context = ContextSynchronizer(self.config, instructions, tool_definitions)
        self.reconnection = reconnection or ReconnectionPolicy(self.config)
        self.dispatcher = EventDispatcher(self.send, tools, label=document_id)

        self.on_message: EventStream[SessionMessage] = EventStream("message")
        self.on_error: EventStream[SessionError] = EventStream("error")
        self.on_status_change: EventStream[bool] = EventStream("status")
        self.on_playback_blocked: EventStream[PlaybackBlocked] = EventStream("playback_blocked")
        self.on_event: EventStream[InboundEvent] = self.dispatcher.events
        self.on_audio: EventStream[str] = self.dispatcher.audio

        self.dispatcher.messages.subscribe(self._forward_message)
        self.dispatcher.remote_errors.subscribe(self._forward_remote_error)

        self._handles: TransportHandles | None = None
        self._generation = 0
        self._page_visible = True
        self._connect_requested = False
        self._starting_recording = False
        self._tasks: set[asyncio.Task] = set()

    # ──────────────────────────────────────────────────────────
    # Properties
    # ──────────────────────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self.state.status

    @property
    def handles(self) -> TransportHandles | None:
        return self._handles

    @property
    def page_visible(self) -> bool:
        return self._page_visible

    @property
    def push_to_talk(self) -> bool:
        return not self.state.voice_mode_enabled

    @property
    def transcript(self) -> str:
        return self.dispatcher.transcript.text

    # ──────────────────────────────────────────────────────────
    # Connection Lifecycle
    # ──────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Establish a new connection. No-op while connecting or connected."""
        if self.state.connecting or self.state.connected:
            logger.debug("Already connecting or connected, ignoring connect call")
            return

        self._connect_requested = True
        self._generation += 1
        generation = self._generation

        self.state.mark_connecting()
        self.on_status_change.emit(False)

        try:
            await self.teardown()
            session = await self.credentials.create_realtime_session(self.document_id)
            handles = await self.establisher.establish(
                session.ephemeral_key, self.output, self.on_playback_blocked.emit
            )
        except CredentialError as e:
            if generation == self._generation:
                kind = ErrorKind.AUTH if e.is_auth_failure else ErrorKind.TRANSPORT
                self._connect_failed(kind, e.message, "credential", retry=not e.is_auth_failure)
            return
        except MicrophonePermissionError as e:
            if generation == self._generation:
                self._connect_failed(ErrorKind.PERMISSION, e.message, e.stage, retry=False)
            return
        except TransportError as e:
            if generation == self._generation:
                self._connect_failed(ErrorKind.TRANSPORT, e.message, e.stage, retry=e.retryable)
            return
        except BaseException:
            if generation == self._generation:
                self.state.mark_disconnected()
            raise

        if generation != self._generation or self.state.manually_disconnected:
            logger.info("Session disconnected while connecting, discarding transport")
            await handles.close()
            return

        self._handles = handles
        self._wire(handles)

        # Context must be in place before the session is usable
        if not self.context.push(self.send, push_to_talk=self.push_to_talk):
            self._push_context_on_open(handles)

        self.state.mark_connected()
        self.reconnection.reset(self.state)
        self.on_status_change.emit(True)
        logger.info(
            "Voice session connected",
            realtime_session_id=session.id,
            document_id=self.document_id,
            handle_id=handles.handle_id,
        )

    async def disconnect(self) -> None:
        """Explicitly end the session. Suppresses auto-reconnect."""
        self.state.manually_disconnected = True
        self._generation += 1
        self.reconnection.cancel()
        self.state.mark_disconnected()
        self.state.reconnect_pending = False

        handles, self._handles = self._handles, None
        if handles is not None:
            handles.release_microphone()

        self.on_status_change.emit(False)
        logger.info("Voice session disconnected")

        if handles is not None:
            await handles.close()

    async def teardown(self) -> None:
        """Close the current transport handles, if any."""
        handles, self._handles = self._handles, None
        if handles is not None:
            await handles.close()

    async def aclose(self) -> None:
        """Release every resource, e.g. when the host application exits."""
        self._generation += 1
        self.reconnection.cancel()
        self.state.mark_disconnected()
        self.state.reconnect_pending = False
        await self.teardown()
        for task in list(self._tasks):
            task.cancel()
        await self.output.stop()
        await self.establisher.close()

    def set_page_visible(self, visible: bool) -> asyncio.Task | None:
        """
        Record host visibility. Becoming visible while disconnected (and not
        manually) triggers one immediate connect.
        """
        was_visible, self._page_visible = self._page_visible, visible
        if not visible or was_visible:
            return None

        state = self.state
        if (
            self._connect_requested
            and not state.connected
            and not state.connecting
            and not state.manually_disconnected
        ):
            logger.info("Page became visible, attempting to reconnect")
            self.reconnection.cancel()
            return self._spawn(self.connect())
        return None

    def reconnect_exhausted(self, attempts: int) -> None:
        self._report(
            ErrorKind.RECONNECT_EXHAUSTED,
            RECONNECT_EXHAUSTED_MESSAGE.format(attempts=attempts),
            stage="reconnect",
        )

    # ──────────────────────────────────────────────────────────
    # Commands
    # ──────────────────────────────────────────────────────────

    async def toggle_voice_mode(self) -> bool:
        """Flip between continuous voice and push-to-talk. Stops recording first."""
        if self.state.recording:
            await self.stop_recording()

        self.state.voice_mode_enabled = not self.state.voice_mode_enabled
        if self.state.connected and self._handles is not None:
            self.context.push(self.send, push_to_talk=self.push_to_talk)

        logger.info("Voice mode toggled", enabled=self.state.voice_mode_enabled)
        return self.state.voice_mode_enabled

    async def start_recording(self) -> None:
        """Start streaming microphone audio into the remote input buffer."""
        handles = self._handles
        if not self.state.connected or handles is None:
            logger.error("Cannot start recording: not connected to server")
            self._report(ErrorKind.NOT_CONNECTED, "Cannot start recording: not connected")
            return

        if self.state.recording or self._starting_recording:
            logger.debug("Already recording, ignoring start request")
            return

        self._starting_recording = True
        try:
            if handles.microphone is None or not handles.microphone.live:
                stream = await self.establisher.media_devices.get_user_media(
                    self.establisher.audio_constraints()
                )
                if handles is not self._handles:
                    stream.stop()
                    return
                if not stream.get_audio_tracks():
                    stream.stop()
                    self._report(
                        ErrorKind.PERMISSION,
                        "No audio tracks available in the stream",
                        stage="microphone",
                    )
                    return
                if handles.attach_microphone(stream):
                    logger.info("Added audio track to peer connection")

            if not self.send(InputAudioBufferClear()):
                handles.release_microphone()
                self._report(ErrorKind.RECORDING, "Data channel is not open", recoverable=True)
                return

            self.state.recording = True
            logger.info("Recording started")
        except MicrophonePermissionError as e:
            self._report(ErrorKind.PERMISSION, e.message, stage="microphone")
        finally:
            self._starting_recording = False

    async def stop_recording(self) -> None:
        """Stop capture, commit the buffered audio and request a response."""
        if not self.state.recording:
            return

        self.state.recording = False
        if self._handles is not None:
            self._handles.release_microphone()

        if not self.send(InputAudioBufferCommit()):
            logger.warning("Recording stopped but audio buffer was not committed")
            return
        self.send(ResponseCreate())
        logger.info("Recording stopped")

    def set_context(self, text: str, document_id: str | None = None) -> bool:
        """
        Replace the document context. While connected, one session.update
        is sent immediately. Returns True if it was sent.
        """
        self.context.set(text, document_id or self.document_id)
        if self.state.connected and self._handles is not None:
            return self.context.push(self.send, push_to_talk=self.push_to_talk)
        return False

    async def load_document(self, documents: DocumentSource, document_id: str) -> bool:
        """Fetch a document's content and install it as voice context."""
        document = await documents.get_document_content(document_id)
        self.document_id = document_id
        text = format_document_for_voice(
            document.content,
            document.documentName or document_id,
            document.documentType,
            self.config.voice_context_max_length,
        )
        return self.set_context(text, document_id)

    def send_text(self, text: str) -> bool:
        """Ask a typed question over the live session."""
        if not self.send(user_text_message(text)):
            return False
        return self.send(ResponseCreate())

    def send(self, message: OutboundMessage | dict) -> bool:
        """Encode and send one message on the data channel."""
        handles = self._handles
        if handles is None:
            logger.error("Cannot send message: no active transport")
            return False
        try:
            frame = encode(message)
        except EncodeError as e:
            logger.error("Failed to encode message", error=str(e))
            return False
        return handles.send(frame)

    # ──────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(
        self,
        kind: ErrorKind,
        message: str,
        stage: str | None = None,
        recoverable: bool = False,
    ) -> None:
        self.state.last_error = message
        self.on_error.emit(
            SessionError(kind=kind, message=message, stage=stage, recoverable=recoverable)
        )

    def _connect_failed(self, kind: ErrorKind, message: str, stage: str, retry: bool) -> None:
        logger.error("Connection error", kind=kind.value, stage=stage, error=message)
        self.state.mark_disconnected(error=message)
        self._report(kind, message, stage=stage, recoverable=retry)
        if retry:
            self.reconnection.request(self)

    def _wire(self, handles: TransportHandles) -> None:
        frames: asyncio.Queue = asyncio.Queue()
        handles.listen(handles.data_channel, "message", frames.put_nowait)
        handles.spawn(self._consume(handles, frames))
        handles.listen(
            handles.connection,
            "iceconnectionstatechange",
            lambda: self._on_ice_state(handles),
        )
        handles.listen(
            handles.connection,
            "connectionstatechange",
            lambda: self._on_connection_state(handles),
        )

    def _push_context_on_open(self, handles: TransportHandles) -> None:
        """Apply the session context once a still-connecting channel opens."""
        channel = handles.data_channel
        if channel is None or channel.readyState == "open":
            return

        applied = False

        def on_open() -> None:
            nonlocal applied
            if applied or handles is not self._handles:
                return
            applied = True
            logger.info("Data channel opened, applying session context")
            self.context.push(self.send, push_to_talk=self.push_to_talk)

        logger.info("Data channel not open yet, deferring session context")
        handles.listen(channel, "open", on_open)

    async def _consume(self, handles: TransportHandles, frames: asyncio.Queue) -> None:
        while True:
            frame = await frames.get()
            if handles is not self._handles:
                continue
            await self.dispatcher.handle_frame(frame)

    def _mark_lost(self, handles: TransportHandles) -> None:
        handles.release_microphone()
        self.state.mark_disconnected()
        self.on_status_change.emit(False)

    def _on_ice_state(self, handles: TransportHandles) -> None:
        if handles is not self._handles:
            return
        ice_state = handles.ice_connection_state
        logger.info("ICE connection state", state=ice_state)
        if ice_state not in ICE_LOST_STATES or self.state.manually_disconnected:
            return

        logger.warning("ICE connection lost, will attempt reconnect", state=ice_state)
        self._mark_lost(handles)
        self.reconnection.request(self)

    def _on_connection_state(self, handles: TransportHandles) -> None:
        if handles is not self._handles:
            return
        connection_state = handles.connection_state
        logger.info("Connection state changed", state=connection_state)
        if connection_state != "failed" or self.state.manually_disconnected:
            return

        logger.warning("WebRTC connection failed, forcing reconnect")
        self._mark_lost(handles)
        self.reconnection.request(self, forced=True)

    def _forward_message(self, message: SessionMessage) -> None:
        self.on_message.emit(message)
        if message.message_type == "assistant" and self.context.has_context:
            self.on_message.emit(SessionMessage(text=RAG_INDICATOR, message_type="rag-indicator"))

    def _forward_remote_error(self, event: InboundEvent) -> None:
        self._report(ErrorKind.REMOTE, event.error_message, recoverable=True)


__all__ = ["VoiceSession", "CredentialProvider", "DocumentSource", "RAG_INDICATOR"]
