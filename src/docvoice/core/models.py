"""
DocVoice Core Domain Models

Session state, document context and the error payload surfaced to observers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ══════════════════════════════════════════════════════════════
# Enums
# ══════════════════════════════════════════════════════════════


class ConnectionStatus(str, Enum):
    """Derived lifecycle status of a voice session."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECORDING = "recording"
    FAILED = "failed"
    RECONNECTING = "reconnecting"


class ErrorKind(str, Enum):
    """Categories of errors surfaced through the error stream."""

    PERMISSION = "permission"
    AUTH = "auth"
    TRANSPORT = "transport"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    NOT_CONNECTED = "not_connected"
    RECORDING = "recording"
    REMOTE = "remote"


class DocumentType(str, Enum):
    PDF = "pdf"
    YOUTUBE = "youtube"


# ══════════════════════════════════════════════════════════════
# Session State
# ══════════════════════════════════════════════════════════════


@dataclass
class SessionState:
    """Mutable state of one voice session. Owned by a single VoiceSession."""

    connected: bool = False
    connecting: bool = False
    voice_mode_enabled: bool = False
    recording: bool = False
    manually_disconnected: bool = False
    last_error: str | None = None
    reconnect_attempts: int = 0
    reconnect_pending: bool = False

    @property
    def status(self) -> ConnectionStatus:
        if self.recording:
            return ConnectionStatus.RECORDING
        if self.connected:
            return ConnectionStatus.CONNECTED
        if self.connecting:
            return ConnectionStatus.CONNECTING
        if self.reconnect_pending:
            return ConnectionStatus.RECONNECTING
        if self.last_error and not self.manually_disconnected:
            return ConnectionStatus.FAILED
        return ConnectionStatus.IDLE

    def mark_connecting(self) -> None:
        self.connecting = True
        self.connected = False
        self.manually_disconnected = False
        self.last_error = None

    def mark_connected(self) -> None:
        self.connecting = False
        self.connected = True
        self.reconnect_pending = False

    def mark_disconnected(self, error: str | None = None) -> None:
        self.connecting = False
        self.connected = False
        self.recording = False
        if error is not None:
            self.last_error = error

    def snapshot(self) -> dict:
        return {
            "status": self.status.value,
            "connected": self.connected,
            "connecting": self.connecting,
            "voice_mode_enabled": self.voice_mode_enabled,
            "recording": self.recording,
            "manually_disconnected": self.manually_disconnected,
            "last_error": self.last_error,
            "reconnect_attempts": self.reconnect_attempts,
        }


# ══════════════════════════════════════════════════════════════
# Document Context
# ══════════════════════════════════════════════════════════════


class DocumentContext(BaseModel):
    """Document-derived text injected into the session instructions."""

    document_id: str | None = None
    content: str
    document_name: str | None = None
    document_type: DocumentType | None = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# ══════════════════════════════════════════════════════════════
# Observer Payloads
# ══════════════════════════════════════════════════════════════


class SessionError(BaseModel):
    """Error surfaced through the session's error stream."""

    kind: ErrorKind
    message: str
    stage: str | None = None
    recoverable: bool = False

    model_config = {"use_enum_values": True}


class SessionMessage(BaseModel):
    """Text surfaced through the session's message stream."""

    text: str
    message_type: str = "assistant"


class PlaybackBlocked(BaseModel):
    """Remote audio arrived but the output device refused to play it."""

    reason: str
    requires_user_gesture: bool = True
