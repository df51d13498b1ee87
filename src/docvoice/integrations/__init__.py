"""External service integrations."""

from .backend import BackendClient, DocumentContent, RealtimeSessionInfo
from .openai_realtime import OpenAIRealtimeClient

__all__ = [
    "BackendClient",
    "DocumentContent",
    "RealtimeSessionInfo",
    "OpenAIRealtimeClient",
]
