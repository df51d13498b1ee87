"""
Backend API Integration

Client for the application's credential endpoint (ephemeral realtime keys)
and document content endpoint.
"""

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from docvoice.config import settings
from docvoice.core.errors import CredentialError, DocumentContentError

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════


class ClientSecret(BaseModel):
    value: str
    expires_at: int | None = None


class RealtimeSessionInfo(BaseModel):
    """Session returned by the credential endpoint."""

    id: str
    client_secret: ClientSecret
    model: str | None = None

    @property
    def ephemeral_key(self) -> str:
        return self.client_secret.value


class DocumentContent(BaseModel):
    """Content returned by the document content endpoint."""

    content: str
    documentType: str | None = None
    documentName: str | None = None


# ══════════════════════════════════════════════════════════════
# Backend Client
# ══════════════════════════════════════════════════════════════


class BackendClient:
    """
    HTTP client for the application backend.

    Usage:
        client = BackendClient(token=user_token)
        session = await client.create_realtime_session(document_id)
        document = await client.get_document_content(document_id)
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.backend_base_url).rstrip("/")
        self.token = token
        self.timeout = timeout or settings.backend_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _auth_headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            data: Any = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            detail = data.get("error") or data.get("detail")
            if detail:
                return str(detail)
        return default

    async def create_realtime_session(self, document_id: str | None = None) -> RealtimeSessionInfo:
        """Request an ephemeral realtime credential."""
        if not self.token:
            raise CredentialError("Not authenticated", status_code=401)

        client = await self._get_client()
        try:
            response = await client.post(
                settings.backend_session_path,
                json={"documentId": document_id},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            logger.error("Failed to reach credential endpoint", error=str(e))
            raise CredentialError(f"Failed to create session: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response, "Failed to create session")
            logger.warning(
                "Credential endpoint refused session",
                status=response.status_code,
                error=message,
            )
            raise CredentialError(message, status_code=response.status_code)

        try:
            session = RealtimeSessionInfo.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise CredentialError("No ephemeral key provided", status_code=response.status_code) from e

        if not session.ephemeral_key:
            raise CredentialError("No ephemeral key provided", status_code=response.status_code)

        logger.info("Realtime session created", session_id=session.id, document_id=document_id)
        return session

    async def get_document_content(self, document_id: str) -> DocumentContent:
        """Fetch combined document text used to seed the voice context."""
        client = await self._get_client()
        try:
            response = await client.get(
                settings.backend_document_path.format(document_id=document_id),
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as e:
            raise DocumentContentError(document_id, str(e)) from e

        if response.status_code >= 400:
            raise DocumentContentError(
                document_id,
                self._error_message(response, "Failed to fetch document content"),
                status_code=response.status_code,
            )

        try:
            return DocumentContent.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise DocumentContentError(document_id, f"Invalid content response: {e}") from e


__all__ = ["BackendClient", "RealtimeSessionInfo", "DocumentContent", "ClientSecret"]
