"""
OpenAI Realtime Sessions Integration

Mints ephemeral realtime credentials with the server's API key so clients
never see it.
"""

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from docvoice.config import settings
from docvoice.core.errors import UpstreamError
from .backend import RealtimeSessionInfo

logger = structlog.get_logger()


class OpenAIRealtimeClient:
    """
    Client for POST /v1/realtime/sessions.

    Failures are raised as UpstreamError carrying the status the API layer
    should answer with: 503 when OpenAI is unreachable, OpenAI's own status
    when it refuses, 500 when the response is unusable.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.realtime_model
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def create_session(self) -> dict[str, Any]:
        """Create a realtime session and return OpenAI's session object."""
        client = await self._get_client()
        try:
            response = await client.post(
                settings.realtime_sessions_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={"model": self.model},
            )
        except httpx.HTTPError as e:
            logger.error("Network error calling OpenAI API", error=str(e))
            raise UpstreamError("Failed to connect to OpenAI API", status_code=503) from e

        if response.status_code >= 400:
            message = "Failed to create Realtime session"
            try:
                error = response.json().get("error") or {}
                if isinstance(error, dict) and error.get("message"):
                    message = f"OpenAI Error: {error['message']}"
            except (ValueError, AttributeError):
                logger.error("Failed to parse error response", status=response.status_code)
            logger.error("OpenAI Realtime API error", status=response.status_code, error=message)
            raise UpstreamError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError("Invalid response from OpenAI API", status_code=500) from e

        try:
            RealtimeSessionInfo.model_validate(data)
        except ValidationError as e:
            logger.error("Invalid session data", error=str(e))
            raise UpstreamError("Invalid session data received from OpenAI", status_code=500) from e
        if not data["client_secret"]["value"]:
            raise UpstreamError("Invalid session data received from OpenAI", status_code=500)

        logger.info("Created Realtime session", session_id=data["id"])
        return data


__all__ = ["OpenAIRealtimeClient"]
