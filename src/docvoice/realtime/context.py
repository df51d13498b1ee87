"""
Document Context Synchronization

Keeps the document-derived context embedded in the live session's
instructions, re-sending it whenever it changes or a connection is made.
"""

from typing import Any, Callable

import structlog

from docvoice.config import Settings, settings as default_settings
from docvoice.core.models import DocumentContext, DocumentType
from .protocol import OutboundMessage, SessionUpdate, build_session_update

logger = structlog.get_logger()

INSTRUCTIONS_TRUNCATION_MARKER = "... [truncated]"
VOICE_TRUNCATION_MARKER = "...(truncated)"

RAG_INSTRUCTIONS_TEMPLATE = """
You are a helpful voice assistant with access to specific document content.
Your primary responsibility is to answer questions based on the provided document.

When answering questions:
1. Prioritize information from the document content
2. Cite specific parts of the document when relevant
3. If the question can't be answered from the document, clearly state that and provide a general response
4. Keep responses concise and focused on the question

{instructions}

DOCUMENT CONTENT:
{context}

Remember to focus your answers on the document content above.
"""


def truncate(text: str, max_length: int, marker: str) -> str:
    """Cut text to max_length characters and append marker if it was longer."""
    if len(text) <= max_length:
        return text
    return text[:max_length] + marker


def build_instructions(
    instructions: str,
    context: str | None = None,
    max_length: int = 10000,
) -> str:
    """Embed context into the RAG instruction template and bound its length."""
    full = instructions
    if context:
        full = RAG_INSTRUCTIONS_TEMPLATE.format(instructions=instructions, context=context)
    return truncate(full, max_length, INSTRUCTIONS_TRUNCATION_MARKER)


def format_document_for_voice(
    content: str,
    document_name: str,
    document_type: DocumentType | str | None = None,
    max_length: int = 8000,
) -> str:
    """Label document content with its source for the voice session."""
    if DocumentType(document_type or DocumentType.PDF) == DocumentType.YOUTUBE:
        text = f"YouTube Video: {document_name}\n\n{content}"
    else:
        text = f"Document: {document_name}\n\n{content}"
    return truncate(text, max_length, VOICE_TRUNCATION_MARKER)


class ContextSynchronizer:
    """Owns the most recent document context of one voice session."""

    def __init__(
        self,
        config: Settings | None = None,
        instructions: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> None:
        self.config = config or default_settings
        self.instructions = instructions or self.config.default_instructions
        self.tools = tools
        self._context: DocumentContext | None = None

    @property
    def context(self) -> DocumentContext | None:
        return self._context

    @property
    def has_context(self) -> bool:
        return self._context is not None and bool(self._context.content)

    def set(self, content: str, document_id: str | None = None) -> DocumentContext:
        self._context = DocumentContext(document_id=document_id, content=content)
        return self._context

    def clear(self) -> None:
        self._context = None

    def session_update(self, push_to_talk: bool) -> SessionUpdate:
        context = self._context.content if self._context else None
        return build_session_update(
            build_instructions(self.instructions, context, self.config.instructions_max_length),
            push_to_talk=push_to_talk,
            config=self.config,
            tools=self.tools,
        )

    def push(self, send: Callable[[OutboundMessage], bool], push_to_talk: bool) -> bool:
        """Send one session.update carrying the current instructions and context."""
        sent = send(self.session_update(push_to_talk))
        logger.info(
            "Session update sent",
            sent=sent,
            push_to_talk=push_to_talk,
            has_context=self.has_context,
        )
        return sent


__all__ = [
    "ContextSynchronizer",
    "build_instructions",
    "format_document_for_voice",
    "truncate",
    "INSTRUCTIONS_TRUNCATION_MARKER",
    "VOICE_TRUNCATION_MARKER",
]
