"""
Inbound Event Dispatch

Routes classified realtime events to observers, keeps the conversation
transcript and answers function calls through registered tool handlers.
"""

import inspect
from typing import Any, Awaitable, Callable

import structlog

from docvoice.core.models import SessionMessage
from .events import EventStream
from .protocol import (
    LOGGABLE_EVENT_TYPES,
    InboundEvent,
    InboundEventKind,
    OutboundMessage,
    ResponseCreate,
    decode,
    function_output_message,
)

logger = structlog.get_logger()

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]
SendFunction = Callable[[OutboundMessage], bool | Awaitable[bool]]


class TranscriptLog:
    """Line-oriented conversation transcript."""

    def __init__(self) -> None:
        self._lines: list[str] = []

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self._lines)

    def add(self, role: str, text: str) -> str:
        line = f"{role}: {text}"
        self._lines.append(line)
        return line

    def add_user(self, text: str) -> str:
        return self.add("User", text)

    def add_agent(self, text: str) -> str:
        return self.add("Agent", text)


class EventDispatcher:
    """
    Processes inbound events one at a time, in arrival order.

    Streams:
        audio: base64 audio deltas
        transcript_deltas: partial assistant transcript text
        messages: user transcriptions and assistant text
        events: allow-listed events for generic logging observers
        remote_errors: error events sent by the realtime endpoint
    """

    def __init__(
        self,
        send: SendFunction,
        tools: dict[str, ToolHandler] | None = None,
        transcript: TranscriptLog | None = None,
        label: str | None = None,
    ) -> None:
        self._send = send
        self.tools: dict[str, ToolHandler] = dict(tools or {})
        self.transcript = transcript or TranscriptLog()
        self.label = label

        self.audio: EventStream[str] = EventStream("audio")
        self.transcript_deltas: EventStream[str] = EventStream("transcript_deltas")
        self.messages: EventStream[SessionMessage] = EventStream("messages")
        self.events: EventStream[InboundEvent] = EventStream("events")
        self.remote_errors: EventStream[InboundEvent] = EventStream("remote_errors")

    def register_tool(self, name: str, handler: ToolHandler) -> None:
        self.tools[name] = handler

    async def handle_frame(self, frame: str | bytes) -> InboundEvent | None:
        """
        Decode and dispatch one raw frame. Malformed frames are dropped and
        never stop processing of the frames that follow.
        """
        event = decode(frame)
        if event is None:
            return None
        try:
            await self.dispatch(event)
        except Exception as e:
            logger.warning(
                "Dropping malformed realtime frame",
                session=self.label,
                event_type=event.type,
                error=str(e),
            )
            return None
        return event

    async def dispatch(self, event: InboundEvent) -> None:
        kind = event.kind

        if kind == InboundEventKind.AUDIO_DELTA:
            if event.delta:
                self.audio.emit(event.delta)

        elif kind == InboundEventKind.TRANSCRIPT_DELTA:
            if event.delta:
                self.transcript_deltas.emit(event.delta)

        elif kind == InboundEventKind.FUNCTION_CALL:
            await self._call_tool(event)

        elif kind == InboundEventKind.USER_TRANSCRIPT:
            text = event.transcript
            if text:
                self.transcript.add_user(text)
                logger.info("User transcript", session=self.label, text=text)
                self.messages.emit(SessionMessage(text=text, message_type="user"))

        elif kind == InboundEventKind.RESPONSE_DONE:
            text = event.transcript
            if text:
                self.transcript.add_agent(text)
                logger.info("Agent transcript", session=self.label, text=text)

        elif kind == InboundEventKind.OUTPUT_ITEM_DONE:
            text = event.assistant_text
            if text:
                self.messages.emit(SessionMessage(text=text, message_type="assistant"))

        elif kind == InboundEventKind.ERROR:
            logger.error("Error from realtime API", session=self.label, error=event.error_message)
            self.remote_errors.emit(event)

        elif kind == InboundEventKind.FUNCTION_RESULT:
            logger.debug("Function output acknowledged", session=self.label)

        if event.type in LOGGABLE_EVENT_TYPES:
            self.events.emit(event)

    async def _call_tool(self, event: InboundEvent) -> None:
        name = event.function_name or ""
        handler = self.tools.get(name)
        logger.info("Function called", session=self.label, function=name)

        if handler is None:
            logger.warning("Unknown function requested", session=self.label, function=name)
            output = f"Function {name or '<unnamed>'} is not available."
        else:
            try:
                arguments = event.function_arguments()
            except ValueError as e:
                logger.warning("Invalid function arguments", function=name, error=str(e))
                output = "I couldn't understand the request. Please try again."
            else:
                try:
                    output = await handler(arguments)
                except Exception as e:
                    logger.error("Function handler failed", function=name, error=str(e))
                    output = f"I encountered an error while running {name}. Please try again."

        await self._emit(function_output_message(output, event.call_id))
        await self._emit(ResponseCreate(response={"modalities": ["text", "audio"]}))

    async def _emit(self, message: OutboundMessage) -> bool:
        result = self._send(message)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


__all__ = ["EventDispatcher", "TranscriptLog", "ToolHandler"]
