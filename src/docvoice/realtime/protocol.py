"""
Realtime Event Protocol

Defines the outbound control messages sent over the data channel and the
classification of inbound events received from the realtime endpoint.
"""

from enum import Enum
from typing import Any, Literal

import orjson
import structlog
from pydantic import BaseModel, Field

from docvoice.config import Settings, settings as default_settings
from docvoice.core.errors import EncodeError

logger = structlog.get_logger()


class InboundEventKind(str, Enum):
    """Routing category of an inbound event."""

    AUDIO_DELTA = "audio_delta"
    TRANSCRIPT_DELTA = "transcript_delta"
    USER_TRANSCRIPT = "user_transcript"
    RESPONSE_DONE = "response_done"
    OUTPUT_ITEM_DONE = "output_item_done"
    FUNCTION_CALL = "function_call"
    FUNCTION_RESULT = "function_result"
    SESSION_LIFECYCLE = "session_lifecycle"
    ERROR = "error"
    LOGGABLE = "loggable"
    IGNORED = "ignored"


# Event types passed through to generic observers
LOGGABLE_EVENT_TYPES = frozenset(
    {
        "response.content.done",
        "response.done",
        "input_audio_buffer.speech_stopped",
        "input_audio_buffer.speech_started",
        "session.created",
        "response.text.done",
        "conversation.item.input_audio_transcription.completed",
    }
)


# ══════════════════════════════════════════════════════════════
# Outbound Messages
# ══════════════════════════════════════════════════════════════


class OutboundMessage(BaseModel):
    """Base data channel message."""

    type: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class InputAudioBufferClear(OutboundMessage):
    type: Literal["input_audio_buffer.clear"] = "input_audio_buffer.clear"


class InputAudioBufferAppend(OutboundMessage):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str  # base64 encoded pcm16


class InputAudioBufferCommit(OutboundMessage):
    type: Literal["input_audio_buffer.commit"] = "input_audio_buffer.commit"


class ConversationItemCreate(OutboundMessage):
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: dict[str, Any]


class ResponseCreate(OutboundMessage):
    type: Literal["response.create"] = "response.create"
    response: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        data = super().to_wire()
        if data["response"] is None:
            data.pop("response")
        return data


class TurnDetection(BaseModel):
    """Server-side voice activity detection settings."""

    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 200
    create_response: bool = True


class RealtimeSessionConfig(BaseModel):
    """Payload of a session.update message."""

    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    instructions: str
    voice: str = "alloy"
    response_format: dict[str, str] = Field(default_factory=lambda: {"type": "text_and_audio"})
    input_audio_format: str = "pcm16"
    output_audio_format: str = "pcm16"
    audio_sample_rate: int = 24000
    audio_bit_depth: int = 16
    input_audio_transcription: dict[str, str] = Field(
        default_factory=lambda: {"model": "whisper-1"}
    )
    # None selects manual (push-to-talk) turn taking
    turn_detection: TurnDetection | None = None

    # Only sent when set
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | None = None
    temperature: float | None = None


class SessionUpdate(OutboundMessage):
    type: Literal["session.update"] = "session.update"
    session: RealtimeSessionConfig

    def to_wire(self) -> dict[str, Any]:
        data = super().to_wire()
        for key in ("tools", "tool_choice", "temperature"):
            if data["session"].get(key) is None:
                data["session"].pop(key, None)
        return data


def turn_detection_for(push_to_talk: bool, config: Settings | None = None) -> TurnDetection | None:
    """Turn detection policy: none for push-to-talk, server VAD otherwise."""
    if push_to_talk:
        return None
    config = config or default_settings
    return TurnDetection(
        threshold=config.vad_threshold,
        prefix_padding_ms=config.vad_prefix_padding_ms,
        silence_duration_ms=config.vad_silence_duration_ms,
        create_response=config.vad_create_response,
    )


def build_session_update(
    instructions: str,
    push_to_talk: bool,
    config: Settings | None = None,
    tools: list[dict[str, Any]] | None = None,
) -> SessionUpdate:
    """Build a session.update carrying instructions and audio configuration."""
    config = config or default_settings
    return SessionUpdate(
        session=RealtimeSessionConfig(
            instructions=instructions,
            voice=config.realtime_voice,
            input_audio_format=config.audio_format,
            output_audio_format=config.audio_format,
            audio_sample_rate=config.audio_sample_rate,
            audio_bit_depth=config.audio_bit_depth,
            input_audio_transcription={"model": config.transcription_model},
            turn_detection=turn_detection_for(push_to_talk, config),
            tools=tools,
            tool_choice="auto" if tools else None,
        )
    )


def user_text_message(text: str) -> ConversationItemCreate:
    return ConversationItemCreate(
        item={
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        }
    )


def function_output_message(output: str, call_id: str | None = None) -> ConversationItemCreate:
    item: dict[str, Any] = {"type": "function_call_output", "output": output}
    if call_id:
        item["call_id"] = call_id
    return ConversationItemCreate(item=item)


def encode(message: OutboundMessage | dict[str, Any]) -> str:
    """Serialize an outbound message into a text frame."""
    if isinstance(message, OutboundMessage):
        data = message.to_wire()
    elif isinstance(message, dict):
        data = message
    else:
        raise EncodeError(f"Unsupported message object: {type(message).__name__}")

    if not data.get("type"):
        raise EncodeError("Outbound message has no type")

    try:
        return orjson.dumps(data).decode()
    except TypeError as e:
        raise EncodeError(f"Failed to serialize {data['type']}: {e}") from e


# ══════════════════════════════════════════════════════════════
# Inbound Events
# ══════════════════════════════════════════════════════════════


def _mapping(value: Any) -> dict[str, Any]:
    """Nested payload object, or an empty dict when the shape is wrong."""
    return value if isinstance(value, dict) else {}


def _mappings(value: Any) -> list[dict[str, Any]]:
    """Object entries of a nested payload list; anything else is skipped."""
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


class InboundEvent(BaseModel):
    """A classified event received from the realtime endpoint."""

    kind: InboundEventKind
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def _text(self, key: str) -> str | None:
        value = self.payload.get(key)
        return value if isinstance(value, str) else None

    @property
    def delta(self) -> str | None:
        return self._text("delta")

    @property
    def function_name(self) -> str | None:
        return self._text("name")

    @property
    def call_id(self) -> str | None:
        return self._text("call_id")

    def function_arguments(self) -> dict[str, Any]:
        """Parse the JSON argument string of a function call."""
        raw = self.payload.get("arguments") or "{}"
        if isinstance(raw, dict):
            return raw
        parsed = orjson.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("Function arguments must be a JSON object")
        return parsed

    @property
    def transcript(self) -> str | None:
        """Transcript text for user transcription and response.done events."""
        if self.kind == InboundEventKind.USER_TRANSCRIPT:
            text = self.payload.get("transcript")
            if not isinstance(text, str):
                return None
            return text.strip() or None
        if self.kind == InboundEventKind.RESPONSE_DONE:
            response = _mapping(self.payload.get("response"))
            for output in _mappings(response.get("output")):
                for content in _mappings(output.get("content")):
                    transcript = content.get("transcript")
                    if transcript and isinstance(transcript, str):
                        return transcript
        return None

    @property
    def assistant_text(self) -> str | None:
        """Text of an audio-bearing message item in response.output_item.done."""
        if self.kind != InboundEventKind.OUTPUT_ITEM_DONE:
            return None
        item = _mapping(self.payload.get("item"))
        if item.get("type") != "message":
            return None
        content = _mappings(item.get("content"))
        if not any(c.get("type") == "audio" for c in content):
            return None
        for part in content:
            if part.get("type") == "text" and isinstance(part.get("text"), str) and part["text"]:
                return part["text"]
        return extract_transcript(self.payload)

    @property
    def error_message(self) -> str:
        message = _mapping(self.payload.get("error")).get("message")
        if isinstance(message, str) and message:
            return message
        return self._text("message") or "Unknown error"


def classify(event_type: str, payload: dict[str, Any]) -> InboundEventKind:
    """Map an event type tag to its routing category."""
    if event_type == "error":
        return InboundEventKind.ERROR
    if event_type.endswith(".audio.delta"):
        return InboundEventKind.AUDIO_DELTA
    if event_type.endswith("audio_transcript.delta"):
        return InboundEventKind.TRANSCRIPT_DELTA
    if event_type.endswith(".function_call_arguments.done"):
        return InboundEventKind.FUNCTION_CALL
    if event_type.endswith(".input_audio_transcription.completed"):
        return InboundEventKind.USER_TRANSCRIPT
    if event_type == "response.done":
        return InboundEventKind.RESPONSE_DONE
    if event_type == "response.output_item.done":
        return InboundEventKind.OUTPUT_ITEM_DONE
    if event_type == "conversation.item.created":
        if _mapping(payload.get("item")).get("type") == "function_call_output":
            return InboundEventKind.FUNCTION_RESULT
    if event_type.startswith("session."):
        return InboundEventKind.SESSION_LIFECYCLE
    if event_type in LOGGABLE_EVENT_TYPES:
        return InboundEventKind.LOGGABLE
    return InboundEventKind.IGNORED


def decode(frame: str | bytes) -> InboundEvent | None:
    """
    Parse and classify one inbound frame.

    Malformed frames (invalid JSON, non-object payloads, missing type) are
    logged and dropped by returning None.
    """
    try:
        data = orjson.loads(frame)
    except orjson.JSONDecodeError as e:
        logger.warning("Dropping malformed realtime frame", error=str(e))
        return None

    if not isinstance(data, dict):
        logger.warning("Dropping non-object realtime frame", frame_type=type(data).__name__)
        return None

    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        logger.warning("Dropping realtime frame without type", keys=sorted(data.keys()))
        return None

    return InboundEvent(kind=classify(event_type, data), type=event_type, payload=data)


# ══════════════════════════════════════════════════════════════
# Audio Payload Helpers
# ══════════════════════════════════════════════════════════════


def extract_audio_data(data: dict[str, Any] | None) -> str | None:
    """Find base64 audio in an event root, its item, or item content."""
    if not data:
        return None
    if data.get("audio"):
        return data["audio"]

    item = data.get("item")
    if isinstance(item, dict):
        if item.get("audio"):
            return item["audio"]
        for content in _mappings(item.get("content")):
            if content.get("type") == "audio" and content.get("audio"):
                return content["audio"]
    return None


def extract_transcript(data: dict[str, Any] | None) -> str | None:
    """Find a transcript in an event root, its item, or audio item content."""
    if not data:
        return None
    if data.get("transcript"):
        return data["transcript"]

    item = data.get("item")
    if isinstance(item, dict):
        if item.get("transcript"):
            return item["transcript"]
        for content in _mappings(item.get("content")):
            if content.get("type") == "audio" and content.get("transcript"):
                return content["transcript"]
    return None


def is_audio_response(data: dict[str, Any] | None) -> bool:
    """True if the event carries audio or is an output item with audio content."""
    if not data:
        return False
    if extract_audio_data(data):
        return True

    event_type = data.get("type")
    if isinstance(event_type, str) and "response.output_item" in event_type:
        item = _mapping(data.get("item"))
        return any(c.get("type") == "audio" for c in _mappings(item.get("content")))
    return False
