"""
DocVoice Configuration Management

Centralized configuration using pydantic-settings with environment variable support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ══════════════════════════════════════════════════════════════
    # Application
    # ══════════════════════════════════════════════════════════════
    app_name: str = "DocVoice"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    api_version: str = "v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ══════════════════════════════════════════════════════════════
    # Authentication
    # ══════════════════════════════════════════════════════════════
    jwt_secret: str = ""
    jwt_algorithms: list[str] = ["HS256"]

    # ══════════════════════════════════════════════════════════════
    # Backend (credential + document content endpoints)
    # ══════════════════════════════════════════════════════════════
    backend_base_url: str = "http://localhost:8000"
    backend_timeout_seconds: float = 30.0
    backend_session_path: str = "/api/v1/realtime/session"
    backend_document_path: str = "/api/documents/{document_id}/content"

    # ══════════════════════════════════════════════════════════════
    # OpenAI Realtime
    # ══════════════════════════════════════════════════════════════
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    realtime_ws_model: str = "gpt-4o-realtime-preview-2024-10-01"
    realtime_voice: str = "alloy"
    transcription_model: str = "whisper-1"
    audio_format: str = "pcm16"
    audio_sample_rate: int = 24000
    audio_bit_depth: int = 16
    relay_audio_format: str = "g711_ulaw"
    relay_temperature: float = 0.7

    # ══════════════════════════════════════════════════════════════
    # Transport (WebRTC)
    # ══════════════════════════════════════════════════════════════
    ice_servers: list[str] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    ice_gathering_timeout_seconds: float = 5.0
    connection_timeout_seconds: float = 15.0
    data_channel_label: str = "oai-events"
    microphone_device: str = "default"
    microphone_format: str = "pulse"  # pulse, alsa, avfoundation, dshow
    microphone_sample_rate: int = 48000
    playback_retry_delay_seconds: float = 0.5

    # ══════════════════════════════════════════════════════════════
    # Turn Detection (continuous voice mode)
    # ══════════════════════════════════════════════════════════════
    vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 200
    vad_create_response: bool = True

    # ══════════════════════════════════════════════════════════════
    # Reconnection
    # ══════════════════════════════════════════════════════════════
    reconnect_max_attempts: int = 5
    reconnect_base_delay_ms: int = 1000
    reconnect_forced_base_delay_ms: int = 500
    reconnect_backoff_factor: float = 1.5
    reconnect_max_delay_ms: int = 30000
    reconnect_settle_delay_ms: int = 100

    # ══════════════════════════════════════════════════════════════
    # Document Context
    # ══════════════════════════════════════════════════════════════
    instructions_max_length: int = 10000
    voice_context_max_length: int = 8000
    default_instructions: str = (
        "You are a helpful voice assistant. "
        "Answer questions based on the provided document context."
    )
    search_result_count: int = 5

    @field_validator("cors_origins", "ice_servers", mode="before")
    @classmethod
    def parse_comma_list(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def realtime_url(self) -> str:
        """WebRTC SDP exchange endpoint."""
        return f"{self.openai_base_url.rstrip('/')}/realtime"

    @property
    def realtime_sessions_url(self) -> str:
        """Ephemeral session minting endpoint."""
        return f"{self.openai_base_url.rstrip('/')}/realtime/sessions"

    @property
    def realtime_ws_url(self) -> str:
        """Upstream websocket endpoint used by the server-side relay."""
        base = self.openai_base_url.rstrip("/").replace("https://", "wss://", 1)
        return f"{base}/realtime?model={self.realtime_ws_model}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
