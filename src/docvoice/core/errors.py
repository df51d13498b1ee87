"""
DocVoice Error Taxonomy

Exceptions raised by the transport, codec and collaborator clients.
"""

from typing import Literal

TransportStage = Literal[
    "microphone",
    "offer",
    "ice_gathering",
    "sdp_exchange",
    "remote_description",
    "connection",
]

MicrophoneFailure = Literal["denied", "not_found", "in_use", "unavailable"]


class DocVoiceError(Exception):
    """Base class for all DocVoice errors."""


class TransportError(DocVoiceError):
    """Failure while establishing the realtime media/data connection."""

    def __init__(self, stage: TransportStage, message: str, retryable: bool = True):
        self.stage = stage
        self.message = message
        self.retryable = retryable
        super().__init__(f"{stage}: {message}")


class MicrophonePermissionError(TransportError):
    """Microphone could not be acquired. Never retried automatically."""

    MESSAGES: dict[str, str] = {
        "denied": "Microphone access denied. Please allow microphone access and try again.",
        "not_found": "No microphone found. Please connect a microphone and try again.",
        "in_use": "Microphone is in use by another application. Please close other apps using the microphone.",
        "unavailable": "Microphone is unavailable.",
    }

    def __init__(self, reason: MicrophoneFailure, detail: str | None = None):
        self.reason = reason
        message = self.MESSAGES[reason]
        if detail:
            message = f"{message} ({detail})"
        super().__init__("microphone", message, retryable=False)


class CredentialError(DocVoiceError):
    """The credential endpoint refused or returned an unusable session."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class DocumentContentError(DocVoiceError):
    """The document content endpoint failed."""

    def __init__(self, document_id: str, message: str, status_code: int | None = None):
        self.document_id = document_id
        self.status_code = status_code
        super().__init__(f"{document_id}: {message}")


class PlaybackRejectedError(DocVoiceError):
    """The audio output refused to start playback of remote audio."""


class EncodeError(DocVoiceError):
    """An outbound message could not be serialized into a frame."""


class UpstreamError(DocVoiceError):
    """The OpenAI API failed while minting a realtime session."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


__all__ = [
    "DocVoiceError",
    "TransportError",
    "TransportStage",
    "MicrophonePermissionError",
    "MicrophoneFailure",
    "CredentialError",
    "DocumentContentError",
    "EncodeError",
    "PlaybackRejectedError",
    "UpstreamError",
]
