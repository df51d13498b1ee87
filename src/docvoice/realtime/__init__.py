"""
DocVoice Realtime Module

Client voice sessions over WebRTC and the server-side websocket relay.
"""

from .bridge import RealtimeBridge
from .context import ContextSynchronizer, format_document_for_voice
from .dispatch import EventDispatcher, TranscriptLog
from .events import EventStream
from .protocol import InboundEvent, InboundEventKind, decode, encode
from .reconnect import ReconnectionPolicy
from .registry import RelaySession, SessionRegistry
from .session import VoiceSession
from .tools import RAG_AGENT, AgentConfig, DocumentSearch, NullDocumentSearch
from .transport import TransportEstablisher, TransportHandles

__all__ = [
    # Session
    "VoiceSession",
    "ReconnectionPolicy",
    "ContextSynchronizer",
    "format_document_for_voice",
    # Transport
    "TransportEstablisher",
    "TransportHandles",
    # Events
    "EventStream",
    "EventDispatcher",
    "TranscriptLog",
    "InboundEvent",
    "InboundEventKind",
    "decode",
    "encode",
    # Agents
    "AgentConfig",
    "RAG_AGENT",
    "DocumentSearch",
    "NullDocumentSearch",
    # Relay
    "RealtimeBridge",
    "RelaySession",
    "SessionRegistry",
]
