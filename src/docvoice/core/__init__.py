"""Core domain models and errors."""

from .errors import (
    CredentialError,
    DocumentContentError,
    DocVoiceError,
    EncodeError,
    MicrophonePermissionError,
    PlaybackRejectedError,
    TransportError,
    UpstreamError,
)
from .models import (
    ConnectionStatus,
    DocumentContext,
    DocumentType,
    ErrorKind,
    PlaybackBlocked,
    SessionError,
    SessionMessage,
    SessionState,
)

__all__ = [
    "ConnectionStatus",
    "DocumentContext",
    "DocumentType",
    "ErrorKind",
    "PlaybackBlocked",
    "SessionError",
    "SessionMessage",
    "SessionState",
    "DocVoiceError",
    "TransportError",
    "MicrophonePermissionError",
    "CredentialError",
    "DocumentContentError",
    "EncodeError",
    "PlaybackRejectedError",
    "UpstreamError",
]
