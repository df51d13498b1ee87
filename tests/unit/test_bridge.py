"""
Unit Tests for the Server-side Realtime Relay

The upstream websocket and the client socket are in-memory fakes driven
through queues.
"""

import asyncio
from contextlib import asynccontextmanager

import orjson
import pytest
from fastapi import WebSocketDisconnect

from docvoice.realtime.bridge import UPSTREAM_ERROR_MESSAGE, RealtimeBridge
from docvoice.realtime.registry import RelaySession
from docvoice.realtime.tools import NO_RESULTS_MESSAGE


# ══════════════════════════════════════════════════════════════
# Fakes
# ══════════════════════════════════════════════════════════════


class FakeUpstream:
    """Upstream websocket. Frames put on `incoming` are yielded; None closes."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []

    async def send(self, data: str) -> None:
        self.sent.append(orjson.loads(data))

    @property
    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeClient:
    """Client websocket. Items put on `incoming` are received; exceptions are raised."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []

    async def receive_text(self) -> str:
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def send_text(self, data: str) -> None:
        self.sent.append(orjson.loads(data))


class FakeSearch:
    def __init__(self, results: list[str]) -> None:
        self.results = results
        self.queries: list[tuple[str, str, int]] = []

    async def search(self, document_id: str, query: str, limit: int) -> list[str]:
        self.queries.append((document_id, query, limit))
        return self.results


def event(**data) -> str:
    return orjson.dumps(data).decode()


@pytest.fixture
def relay_session() -> RelaySession:
    return RelaySession(session_id="session_test", user_id="user-1", document_id="doc-1")


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def connections(upstream):
    """Connect factory recording every upstream dial."""
    calls = []

    @asynccontextmanager
    async def connect(url, additional_headers=None):
        calls.append((url, additional_headers))
        yield upstream

    connect.calls = calls
    return connect


@pytest.fixture
def bridge(relay_session, client, test_settings, connections) -> RealtimeBridge:
    return RealtimeBridge(
        relay_session,
        client,
        search=FakeSearch(["Pricing starts at $10."]),
        config=test_settings,
        connect=connections,
    )


# ══════════════════════════════════════════════════════════════
# Tests
# ══════════════════════════════════════════════════════════════


class TestSessionSetup:
    """Test the initial upstream configuration."""

    def test_initial_session_update(self, bridge, test_settings):
        update = bridge.initial_session_update().to_wire()
        session = update["session"]

        assert update["type"] == "session.update"
        assert session["input_audio_format"] == "g711_ulaw"
        assert session["output_audio_format"] == "g711_ulaw"
        assert session["turn_detection"]["type"] == "server_vad"
        assert session["tool_choice"] == "auto"
        assert session["temperature"] == 0.7
        assert [t["name"] for t in session["tools"]] == ["search_document"]

    @pytest.mark.asyncio
    async def test_upstream_headers(self, bridge, client, upstream, connections, test_settings):
        upstream.incoming.put_nowait(None)

        await bridge.run()

        url, headers = connections.calls[0]
        assert url == test_settings.realtime_ws_url
        assert headers["Authorization"] == "Bearer sk-test"
        assert headers["OpenAI-Beta"] == "realtime=v1"
        assert upstream.sent_types == ["session.update"]


class TestRelay:
    """Test message flow in both directions."""

    @pytest.mark.asyncio
    async def test_client_text_forwarded(self, bridge, client, upstream, relay_session):
        client.incoming.put_nowait(orjson.dumps({"type": "text", "content": "Hi"}).decode())
        client.incoming.put_nowait(WebSocketDisconnect())

        await bridge.run()

        assert upstream.sent_types == [
            "session.update",
            "conversation.item.create",
            "response.create",
        ]
        item = upstream.sent[1]["item"]
        assert item["role"] == "user"
        assert item["content"][0]["text"] == "Hi"
        assert relay_session.upstream is None
        assert relay_session.upstream_ready is False

    @pytest.mark.asyncio
    async def test_client_audio_forwarded(self, bridge, client, upstream):
        client.incoming.put_nowait(orjson.dumps({"type": "audio", "audio": "AAAA"}).decode())
        client.incoming.put_nowait(WebSocketDisconnect())

        await bridge.run()

        assert upstream.sent[-1] == {"type": "input_audio_buffer.append", "audio": "AAAA"}

    @pytest.mark.asyncio
    async def test_upstream_events_forwarded(self, bridge, client, upstream, relay_session):
        upstream.incoming.put_nowait(event(type="response.audio.delta", delta="UklGRg=="))
        upstream.incoming.put_nowait(event(type="input_audio_buffer.speech_started"))
        upstream.incoming.put_nowait(event(type="response.text.delta", delta="ignored"))
        upstream.incoming.put_nowait(
            event(type="conversation.item.input_audio_transcription.completed", transcript="Hello")
        )
        upstream.incoming.put_nowait(None)

        await bridge.run()

        assert client.sent == [
            {"type": "audio", "audio": "UklGRg=="},
            {"type": "input_audio_buffer.speech_started"},
            {
                "type": "conversation.item.input_audio_transcription.completed",
                "transcript": "Hello",
            },
        ]
        assert relay_session.transcript.lines == ["User: Hello"]

    @pytest.mark.asyncio
    async def test_wrong_shape_upstream_events_keep_relay_running(
        self, bridge, client, upstream, relay_session
    ):
        upstream.incoming.put_nowait(event(type="response.done", response={"output": [None]}))
        upstream.incoming.put_nowait(
            event(type="response.output_item.done", item={"type": "message", "content": ["a"]})
        )
        upstream.incoming.put_nowait(
            event(type="conversation.item.input_audio_transcription.completed", transcript="Hello")
        )
        upstream.incoming.put_nowait(None)

        await bridge.run()

        assert relay_session.transcript.lines == ["User: Hello"]
        assert client.sent[-1] == {
            "type": "conversation.item.input_audio_transcription.completed",
            "transcript": "Hello",
        }

    @pytest.mark.asyncio
    async def test_function_call_answered_upstream(self, bridge, upstream):
        upstream.incoming.put_nowait(
            event(
                type="response.function_call_arguments.done",
                name="search_document",
                call_id="call_1",
                arguments='{"query": "pricing"}',
            )
        )
        upstream.incoming.put_nowait(None)

        await bridge.run()

        assert upstream.sent_types[-2:] == ["conversation.item.create", "response.create"]
        assert upstream.sent[-2]["item"] == {
            "type": "function_call_output",
            "output": "Pricing starts at $10.",
            "call_id": "call_1",
        }
        assert upstream.sent[-1]["response"] == {"modalities": ["text", "audio"]}

    @pytest.mark.asyncio
    async def test_function_call_without_search_backend(
        self, relay_session, client, upstream, connections, test_settings
    ):
        bridge = RealtimeBridge(relay_session, client, config=test_settings, connect=connections)
        upstream.incoming.put_nowait(
            event(
                type="response.function_call_arguments.done",
                name="search_document",
                arguments='{"query": "pricing"}',
            )
        )
        upstream.incoming.put_nowait(None)

        await bridge.run()

        assert upstream.sent[-2]["item"]["output"] == NO_RESULTS_MESSAGE


class TestClientMessages:
    """Test translation of individual client messages."""

    @pytest.mark.asyncio
    async def test_invalid_json_ignored(self, bridge, relay_session, upstream):
        relay_session.upstream = upstream

        await bridge.handle_client_message("{not json")
        await bridge.handle_client_message("[1, 2]")
        await bridge.handle_client_message(orjson.dumps({"type": "unknown"}).decode())
        await bridge.handle_client_message(orjson.dumps({"type": "text", "content": ""}).decode())

        assert upstream.sent == []

    @pytest.mark.asyncio
    async def test_send_before_upstream_ready(self, bridge):
        assert await bridge.send_upstream({"type": "response.create"}) is False


class TestUpstreamFailure:
    """Test upstream connection errors."""

    @pytest.mark.asyncio
    async def test_connect_failure_reported(self, relay_session, client, test_settings):
        @asynccontextmanager
        async def refuse(url, additional_headers=None):
            raise OSError("Connection refused")
            yield

        bridge = RealtimeBridge(relay_session, client, config=test_settings, connect=refuse)

        await bridge.run()

        assert client.sent == [{"error": UPSTREAM_ERROR_MESSAGE}]
        assert relay_session.upstream is None
