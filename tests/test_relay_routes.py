"""
Tests for the rendezvous server routes

Uses FastAPI's TestClient against an app backed by a temp SQLite file.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from medsync.config import MedSyncSettings
from medsync.relay.app import create_app

PREFIX = "/api/v1/sync"
OFFER = {"type": "offer", "sdp": "v=0"}


@pytest.fixture
def client(tmp_path):
    settings = MedSyncSettings(environment="testing", data_dir=tmp_path, purge_interval_seconds=3600)
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _create(client, code="ABCDEF"):
    response = client.post(f"{PREFIX}/sessions", json={"pairing_code": code, "offer": OFFER})
    assert response.status_code == 201
    return response.json()


class TestSessionRoutes:
    """HTTP CRUD"""

    def test_create_session(self, client):
        session = _create(client)

        assert session["pairing_code"] == "ABCDEF"
        assert session["offer"] == OFFER
        assert session["status"] == "waiting"
        assert session["ice_candidates"] == []

    def test_create_normalizes_code(self, client):
        session = _create(client, code="abc def")
        assert session["pairing_code"] == "ABCDEF"

    def test_create_rejects_invalid_code(self, client):
        response = client.post(f"{PREFIX}/sessions", json={"pairing_code": "ABC0EF", "offer": OFFER})
        assert response.status_code == 400

    def test_create_conflict(self, client):
        _create(client)
        response = client.post(f"{PREFIX}/sessions", json={"pairing_code": "ABCDEF", "offer": OFFER})
        assert response.status_code == 409

    def test_find_by_code(self, client):
        created = _create(client)

        response = client.get(f"{PREFIX}/sessions/by-code/abcdef")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_find_unknown_code(self, client):
        assert client.get(f"{PREFIX}/sessions/by-code/ZZZZZZ").status_code == 404
        assert client.get(f"{PREFIX}/sessions/by-code/bad").status_code == 400

    def test_patch_answer_and_status(self, client):
        created = _create(client)
        answer = {"type": "answer", "sdp": "v=0"}

        response = client.patch(
            f"{PREFIX}/sessions/{created['id']}",
            json={"answer": answer, "status": "connected"},
        )

        assert response.status_code == 200
        assert response.json()["answer"] == answer
        assert client.get(f"{PREFIX}/sessions/{created['id']}").json()["status"] == "connected"

    def test_second_answer_conflicts(self, client):
        created = _create(client)
        url = f"{PREFIX}/sessions/{created['id']}"
        client.patch(url, json={"answer": {"type": "answer", "sdp": "first"}, "status": "connected"})

        response = client.patch(url, json={"answer": {"type": "answer", "sdp": "second"}})

        assert response.status_code == 409
        assert client.get(url).json()["answer"]["sdp"] == "first"

    def test_patch_rejects_unknown_status(self, client):
        created = _create(client)
        response = client.patch(f"{PREFIX}/sessions/{created['id']}", json={"status": "bogus"})
        assert response.status_code == 422

    def test_add_candidates_appends(self, client):
        created = _create(client)
        url = f"{PREFIX}/sessions/{created['id']}/candidates"

        client.post(url, json={"candidates": [{"candidate": "a", "origin": "sender"}]})
        response = client.post(url, json={"candidates": [{"candidate": "b", "origin": "receiver"}]})

        assert [c["candidate"] for c in response.json()["ice_candidates"]] == ["a", "b"]

    def test_delete(self, client):
        created = _create(client)
        url = f"{PREFIX}/sessions/{created['id']}"

        response = client.delete(url)

        assert response.status_code == 200
        assert response.json() == {"status": "deleted", "session_id": created["id"]}
        assert client.get(url).status_code == 404
        assert client.delete(url).status_code == 404

    def test_missing_session_is_404(self, client):
        assert client.get(f"{PREFIX}/sessions/nope").status_code == 404
        assert client.patch(f"{PREFIX}/sessions/nope", json={"status": "connected"}).status_code == 404
        assert client.post(f"{PREFIX}/sessions/nope/candidates", json={"candidates": []}).status_code == 404

    def test_health_counts_live_sessions(self, client):
        _create(client)
        assert client.get(f"{PREFIX}/health").json() == {"status": "ok", "live_sessions": 1}


class TestUpdateStream:
    """WebSocket realtime updates"""

    def test_unknown_session_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"{PREFIX}/sessions/nope/updates"):
                pass
        assert exc_info.value.code == 1008

    def test_ping_pong(self, client):
        created = _create(client)
        with client.websocket_connect(f"{PREFIX}/sessions/{created['id']}/updates") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_write_is_pushed(self, client):
        created = _create(client)
        with client.websocket_connect(f"{PREFIX}/sessions/{created['id']}/updates") as ws:
            # Round trip first so the listener is registered
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            client.patch(f"{PREFIX}/sessions/{created['id']}", json={"answer": {"type": "answer", "sdp": "a"}})

            pushed = ws.receive_json()
            assert pushed["id"] == created["id"]
            assert pushed["answer"] == {"type": "answer", "sdp": "a"}
