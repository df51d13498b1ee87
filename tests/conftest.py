"""
Pytest Configuration and Fixtures

Shared fixtures for unit and integration tests. WebRTC, microphone and
HTTP collaborators are replaced by in-memory fakes so session behaviour can
be driven deterministically.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import orjson
import pytest
from aiortc import RTCSessionDescription
from fastapi.testclient import TestClient
from jose import jwt

from docvoice.api.app import create_app
from docvoice.config import Settings, settings
from docvoice.core.errors import CredentialError
from docvoice.integrations.backend import ClientSecret, RealtimeSessionInfo
from docvoice.realtime.media import LocalMediaStream
from docvoice.realtime.reconnect import ReconnectionPolicy
from docvoice.realtime.session import VoiceSession
from docvoice.realtime.transport import TransportEstablisher


ANSWER_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=answer\r\n"


# ══════════════════════════════════════════════════════════════
# Settings Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def test_settings() -> Settings:
    """Test settings with short timeouts and no real endpoints."""
    return Settings(
        app_env="development",
        debug=True,
        openai_api_key="sk-test",
        jwt_secret="test-secret",
        backend_base_url="http://backend.test",
        ice_gathering_timeout_seconds=0.05,
        connection_timeout_seconds=0.05,
        playback_retry_delay_seconds=0,
        reconnect_settle_delay_ms=0,
    )


# ══════════════════════════════════════════════════════════════
# WebRTC Fakes
# ══════════════════════════════════════════════════════════════


class FakeEmitter:
    """Minimal pyee-style emitter."""

    def __init__(self) -> None:
        self._handlers: dict[str, dict] = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, {})[handler] = handler
        return handler

    def remove_listener(self, event, handler) -> None:
        self._handlers.get(event, {}).pop(handler)

    def emit(self, event, *args) -> None:
        for handler in list(self._handlers.get(event, {}).values()):
            handler(*args)

    def listener_count(self, event) -> int:
        return len(self._handlers.get(event, {}))


class FakeTrack:
    """Local capture track."""

    def __init__(self, kind: str = "audio") -> None:
        self.kind = kind
        self.readyState = "live"

    def stop(self) -> None:
        self.readyState = "ended"


class FakeSender:
    def __init__(self, track) -> None:
        self.track = track


class FakeDataChannel(FakeEmitter):
    def __init__(self, label: str, ordered: bool = True) -> None:
        super().__init__()
        self.label = label
        self.ordered = ordered
        self.readyState = "connecting"
        self.sent: list[str] = []

    def send(self, data: str) -> None:
        self.sent.append(data)

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def close(self) -> None:
        self.readyState = "closed"

    @property
    def sent_types(self) -> list[str]:
        return [orjson.loads(frame)["type"] for frame in self.sent]

    def sent_of_type(self, event_type: str) -> list[dict]:
        messages = [orjson.loads(frame) for frame in self.sent]
        return [m for m in messages if m["type"] == event_type]


class FakePeerConnection(FakeEmitter):
    """Peer connection that connects as soon as the answer is applied."""

    def __init__(self, configuration=None, connect_on_answer: bool = True) -> None:
        super().__init__()
        self.configuration = configuration
        self.connect_on_answer = connect_on_answer
        self.iceConnectionState = "new"
        self.connectionState = "new"
        self.iceGatheringState = "complete"
        self.localDescription = None
        self.remoteDescription = None
        self.senders: list[FakeSender] = []
        self.channels: list[FakeDataChannel] = []
        self.closed = False

    def createDataChannel(self, label, ordered=True):
        channel = FakeDataChannel(label, ordered=ordered)
        self.channels.append(channel)
        return channel

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    def getTransceivers(self):
        return []

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0\r\ns=offer\r\n", type="offer")

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:
        self.remoteDescription = description
        if self.connect_on_answer:
            self.iceConnectionState = "connected"
            self.connectionState = "connected"
            for channel in self.channels:
                channel.readyState = "open"

    async def close(self) -> None:
        self.closed = True
        self.iceConnectionState = "closed"
        self.connectionState = "closed"

    @property
    def channel(self) -> FakeDataChannel:
        return self.channels[0]

    def set_ice_state(self, state: str) -> None:
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")


class PeerFactory:
    """Records every peer connection the establisher creates."""

    def __init__(self, connect_on_answer: bool = True) -> None:
        self.connect_on_answer = connect_on_answer
        self.created: list[FakePeerConnection] = []

    def __call__(self, configuration) -> FakePeerConnection:
        peer = FakePeerConnection(configuration, connect_on_answer=self.connect_on_answer)
        self.created.append(peer)
        return peer

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeMediaDevices:
    """Microphone that hands out fresh fake tracks."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list = []
        self.streams: list[LocalMediaStream] = []

    async def get_user_media(self, constraints=None) -> LocalMediaStream:
        self.calls.append(constraints)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        stream = LocalMediaStream([FakeTrack()])
        self.streams.append(stream)
        return stream

    @property
    def live_tracks(self) -> list[FakeTrack]:
        return [
            track
            for stream in self.streams
            for track in stream.get_tracks()
            if track.readyState == "live"
        ]


class FakeOutput:
    def __init__(self, reject: int = 0) -> None:
        self.reject = reject
        self.played: list = []
        self.stopped = 0

    async def play(self, track) -> None:
        from docvoice.core.errors import PlaybackRejectedError

        if self.reject > 0:
            self.reject -= 1
            raise PlaybackRejectedError("NotAllowedError: play() requires a user gesture")
        self.played.append(track)

    async def stop(self) -> None:
        self.stopped += 1


class FakeCredentials:
    """Credential provider returning a fixed ephemeral key."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str | None] = []

    async def create_realtime_session(self, document_id=None) -> RealtimeSessionInfo:
        self.calls.append(document_id)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return RealtimeSessionInfo(id="sess_test", client_secret=ClientSecret(value="ek_test"))


class FakeSleep:
    """Injectable sleep that records delays and returns immediately."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


async def _drain(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ══════════════════════════════════════════════════════════════
# Component Fixtures
# ══════════════════════════════════════════════════════════════


@pytest.fixture
def drain():
    """Let pending callbacks and tasks run."""
    return _drain


@pytest.fixture
def make_track():
    return FakeTrack


@pytest.fixture
def make_peer_factory():
    return PeerFactory


@pytest.fixture
def make_output():
    return FakeOutput


@pytest.fixture
def peer_factory() -> PeerFactory:
    return PeerFactory()


@pytest.fixture
def media_devices() -> FakeMediaDevices:
    return FakeMediaDevices()


@pytest.fixture
def output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def sdp_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def sdp_client(sdp_requests) -> httpx.AsyncClient:
    """HTTP client whose SDP endpoint always answers."""

    def handler(request: httpx.Request) -> httpx.Response:
        sdp_requests.append(request)
        return httpx.Response(201, text=ANSWER_SDP)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def establisher(test_settings, media_devices, sdp_client, peer_factory) -> TransportEstablisher:
    return TransportEstablisher(
        test_settings,
        media_devices=media_devices,
        http_client=sdp_client,
        peer_factory=peer_factory,
    )


@pytest.fixture
def reconnection(test_settings, fake_sleep) -> ReconnectionPolicy:
    return ReconnectionPolicy(test_settings, sleep=fake_sleep)


@pytest.fixture
def voice_session(test_settings, credentials, establisher, output, reconnection) -> VoiceSession:
    return VoiceSession(
        credentials,
        establisher=establisher,
        output=output,
        config=test_settings,
        document_id="doc-1",
        reconnection=reconnection,
    )


@pytest.fixture
def auth_failure() -> CredentialError:
    return CredentialError("Invalid authentication token", status_code=401)


# ══════════════════════════════════════════════════════════════
# API Fixtures
# ══════════════════════════════════════════════════════════════


SESSION_RESPONSE = {
    "id": "sess_123",
    "object": "realtime.session",
    "model": "gpt-4o-realtime-preview-2024-12-17",
    "client_secret": {"value": "ek_abc", "expires_at": 1760000000},
}


class FakeOpenAIClient:
    """Stands in for OpenAIRealtimeClient in route tests."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls = 0
        self.closed = False

    async def create_session(self) -> dict:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return dict(SESSION_RESPONSE)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def api_settings(monkeypatch):
    """Configure the process-wide settings used by the API layer."""
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(settings, "debug", True)
    return settings


@pytest.fixture
def make_token():
    """Sign application tokens with the test secret."""
    def _make(user_id: str = "user-1", expires_in: int = 3600, secret: str = "test-secret", **claims):
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user_id,
            "email": f"{user_id}@example.com",
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
            **claims,
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    return _make


@pytest.fixture
def openai_client() -> FakeOpenAIClient:
    return FakeOpenAIClient()


@pytest.fixture
def app(api_settings, openai_client):
    return create_app(openai_client=openai_client)


@pytest.fixture
def api_client(app):
    with TestClient(app) as test_client:
        yield test_client
