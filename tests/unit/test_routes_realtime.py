"""
Unit tests for the realtime websocket relay route.
"""

import pytest

from docvoice.api.routes import realtime as realtime_routes


@pytest.fixture
def bridges(monkeypatch):
    """Replace the relay bridge with one that answers once and returns."""
    created = []

    class FakeBridge:
        def __init__(self, session, websocket, search=None):
            self.session = session
            self.websocket = websocket
            self.search = search
            created.append(self)

        async def run(self):
            await self.websocket.send_json({"session_id": self.session.session_id})

    monkeypatch.setattr(realtime_routes, "RealtimeBridge", FakeBridge)
    return created


class TestRealtimeRelayRoute:
    """Test websocket relay admission."""

    def test_rejects_missing_token(self, api_client, bridges):
        with api_client.websocket_connect("/ws/realtime?documentId=doc-1&userId=user-1") as ws:
            assert ws.receive_json() == {"error": "Invalid authentication token"}

        assert bridges == []

    def test_rejects_invalid_token(self, api_client, bridges):
        url = "/ws/realtime?documentId=doc-1&userId=user-1&token=forged"
        with api_client.websocket_connect(url) as ws:
            assert ws.receive_json() == {"error": "Invalid authentication token"}

        assert bridges == []

    def test_requires_ids(self, api_client, bridges, make_token):
        with api_client.websocket_connect(f"/ws/realtime?userId=user-1&token={make_token()}") as ws:
            assert ws.receive_json() == {"error": "Missing documentId or userId"}

        assert bridges == []

    def test_relays_and_cleans_up(self, api_client, app, bridges, make_token):
        url = f"/ws/realtime?documentId=doc-1&userId=user-1&token={make_token()}"
        with api_client.websocket_connect(url) as ws:
            message = ws.receive_json()

        bridge = bridges[0]
        assert message == {"session_id": bridge.session.session_id}
        assert bridge.session.user_id == "user-1"
        assert bridge.session.document_id == "doc-1"
        assert bridge.search is app.state.document_search
        assert len(app.state.registry) == 0
