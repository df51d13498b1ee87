"""
Agent and Tool Definitions

Function tools exposed to the realtime model and the handlers that answer
them. The RAG agent searches the active document through a DocumentSearch
collaborator; the search backend itself lives outside this package.
"""

from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from docvoice.config import settings
from .dispatch import ToolHandler

logger = structlog.get_logger()

NO_RESULTS_MESSAGE = "I couldn't find relevant information for that query."
SEARCH_FAILED_MESSAGE = "I encountered an error while searching the document. Please try again."


# ══════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════


class FunctionParameters(BaseModel):
    type: str = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class FunctionSpec(BaseModel):
    name: str
    description: str
    parameters: FunctionParameters = Field(default_factory=FunctionParameters)


class ToolDefinition(BaseModel):
    """Function tool in agent form: {"type": "function", "function": {...}}."""

    type: str = "function"
    function: FunctionSpec

    @property
    def name(self) -> str:
        return self.function.name

    def to_session_tool(self) -> dict[str, Any]:
        """Flattened form accepted by session.update."""
        return {
            "type": self.type,
            "name": self.function.name,
            "description": self.function.description,
            "parameters": self.function.parameters.model_dump(),
        }


class AgentConfig(BaseModel):
    """A named assistant persona with its instructions and tools."""

    name: str
    public_description: str
    instructions: str
    tools: list[ToolDefinition] = Field(default_factory=list)
    downstream_agents: list["AgentConfig"] = Field(default_factory=list)

    def session_tools(self) -> list[dict[str, Any]]:
        return [tool.to_session_tool() for tool in self.tools]


# ══════════════════════════════════════════════════════════════
# RAG Agent
# ══════════════════════════════════════════════════════════════

SEARCH_DOCUMENT_TOOL = ToolDefinition(
    function=FunctionSpec(
        name="search_document",
        description="Search for relevant information in the user's document",
        parameters=FunctionParameters(
            properties={
                "query": {
                    "type": "string",
                    "description": "The search query to find relevant information",
                }
            },
            required=["query"],
        ),
    )
)

RAG_AGENT = AgentConfig(
    name="rag_assistant",
    public_description="Agent that helps users find information from their documents using RAG.",
    instructions="""You are an AI assistant helping users find information from their documents.
Your role is to answer questions based on the relevant context provided to you via function calls.
Keep your responses concise, clear, and focused on the user's question.
If the information isn't in the provided context, acknowledge that and avoid making up information.

When a user asks a question:
1. Use the search_document function to find relevant information
2. Analyze the returned context
3. Provide a clear, accurate answer based on the context
4. If the context doesn't contain the answer, say so""",
    tools=[SEARCH_DOCUMENT_TOOL],
)


def inject_transfer_tools(agents: list[AgentConfig]) -> list[AgentConfig]:
    """Give every agent with downstream agents an agent_transfer tool."""
    result = []
    for agent in agents:
        if not agent.downstream_agents:
            result.append(agent)
            continue

        transfer = ToolDefinition(
            function=FunctionSpec(
                name="agent_transfer",
                description="Transfer the conversation to another agent",
                parameters=FunctionParameters(
                    properties={
                        "agent": {
                            "type": "string",
                            "description": "The name of the agent to transfer to",
                            "enum": [a.name for a in agent.downstream_agents],
                        }
                    },
                    required=["agent"],
                ),
            )
        )
        result.append(agent.model_copy(update={"tools": [*agent.tools, transfer]}))
    return result


def get_agent_by_name(agents: list[AgentConfig], name: str) -> AgentConfig | None:
    return next((agent for agent in agents if agent.name == name), None)


# ══════════════════════════════════════════════════════════════
# Document Search
# ══════════════════════════════════════════════════════════════


class DocumentSearch(Protocol):
    """Similarity search over one document's chunks."""

    async def search(self, document_id: str, query: str, limit: int) -> list[str]: ...


class NullDocumentSearch:
    """Search backend that never finds anything."""

    async def search(self, document_id: str, query: str, limit: int) -> list[str]:
        return []


def make_search_document_handler(
    search: DocumentSearch,
    document_id: str,
    limit: int | None = None,
) -> ToolHandler:
    """Bind a search backend and document to a search_document handler."""
    limit = limit or settings.search_result_count

    async def search_document(arguments: dict[str, Any]) -> str:
        query = str(arguments.get("query", "")).strip()
        if not query:
            return NO_RESULTS_MESSAGE

        try:
            chunks = await search.search(document_id, query, limit)
        except Exception as e:
            logger.error("Document search failed", document_id=document_id, error=str(e))
            return SEARCH_FAILED_MESSAGE

        logger.debug("Document search complete", document_id=document_id, results=len(chunks))
        content = "\n\n".join(chunk for chunk in chunks if chunk)
        return content or NO_RESULTS_MESSAGE

    return search_document


def rag_tools(search: DocumentSearch, document_id: str) -> dict[str, ToolHandler]:
    """Handlers for every tool the RAG agent declares."""
    return {SEARCH_DOCUMENT_TOOL.name: make_search_document_handler(search, document_id)}


__all__ = [
    "AgentConfig",
    "ToolDefinition",
    "FunctionSpec",
    "FunctionParameters",
    "SEARCH_DOCUMENT_TOOL",
    "RAG_AGENT",
    "inject_transfer_tools",
    "get_agent_by_name",
    "DocumentSearch",
    "NullDocumentSearch",
    "make_search_document_handler",
    "rag_tools",
]
