"""
API tests for the session REST endpoints and the dashboard stream.

The app runs its real lifespan with the in-memory state backend and a fake
engine connector, so every request goes through the full coordinator graph.
"""

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from apps.callrelay.backend.config import Settings
from apps.callrelay.backend.main import create_app
from apps.callrelay.backend.src.services import DirectoryLeadResolver
from callrelay.collaborators import LeadIdentity

LEADS = {
    "+15550001": LeadIdentity(organization_id="org-a", lead_id="lead-ada", display_name="Ada"),
    "+15550002": LeadIdentity(organization_id="org-b", lead_id="lead-bob", display_name="Bob"),
}


@pytest.fixture()
def client(connector):
    app = create_app(
        settings=Settings(environment="test", state_backend="memory"),
        connector=connector,
        resolver=DirectoryLeadResolver(LEADS),
    )
    with TestClient(app) as client:
        yield client


def _start(client, identity="+15550001", **extra):
    response = client.post("/api/v1/sessions", json={"channelIdentity": identity, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def _receive_until(ws, etype, limit=10):
    for _ in range(limit):
        envelope = ws.receive_json()
        if envelope["type"] == etype:
            return envelope
    raise AssertionError(f"no {etype} envelope received")


class TestSessionEndpoints:
    def test_health_reports_state_store_and_counters(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"][0]["component"] == "state_store"
        assert body["details"] == {"activeSessions": 0, "dashboardSubscribers": 0}

    def test_start_and_read_session(self, client, connector):
        session = _start(client, channelConfig={"channel": "sms"})

        assert session["organizationId"] == "org-a"
        assert session["leadId"] == "lead-ada"
        assert session["status"] == "active"
        assert connector.latest(session["id"]).sent[0]["type"] == "session-init"

        fetched = client.get(f"/api/v1/sessions/{session['id']}").json()
        assert fetched["id"] == session["id"]
        assert fetched["controlOwner"] == "ai"

        latest = client.get("/api/v1/sessions/by-identity/+15550001").json()
        assert latest["id"] == session["id"]

        listed = client.get("/api/v1/sessions", params={"organization_id": "org-a"}).json()
        assert listed["organizationId"] == "org-a"
        assert listed["count"] == 1
        assert client.get("/api/v1/sessions", params={"organization_id": "org-b"}).json()["count"] == 0

    def test_unknown_identity_and_session_return_404(self, client):
        response = client.post("/api/v1/sessions", json={"channelIdentity": "+19999999"})
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "unknown_identity"

        assert client.get("/api/v1/sessions/nope").status_code == 404
        assert client.get("/api/v1/sessions/nope/transcript").status_code == 404
        assert client.post("/api/v1/sessions/nope/takeover", json={"agentId": "a"}).status_code == 404
        assert client.get("/api/v1/sessions/by-identity/+19999999").status_code == 404

    def test_list_requires_organization(self, client):
        assert client.get("/api/v1/sessions").status_code == 422

    def test_takeover_message_release_flow(self, client):
        session_id = _start(client)["id"]

        state = client.post(
            f"/api/v1/sessions/{session_id}/takeover",
            json={"agentId": "agent-1", "reason": "escalation"},
        ).json()
        assert state["owner"] == "human"
        assert state["humanAgentId"] == "agent-1"

        wrong_agent = client.post(
            f"/api/v1/sessions/{session_id}/messages", json={"agentId": "agent-2", "text": "hi"}
        )
        assert wrong_agent.status_code == 409
        assert wrong_agent.json()["detail"]["error"] == "not_in_control"

        entry = client.post(
            f"/api/v1/sessions/{session_id}/messages",
            json={"agentId": "agent-1", "text": "Hi, this is Sam"},
        ).json()
        assert entry["speaker"] == "human"
        assert entry["agentId"] == "agent-1"

        released = client.post(f"/api/v1/sessions/{session_id}/release").json()
        assert released["owner"] == "ai"
        assert released["humanAgentId"] is None

        transcript = client.get(f"/api/v1/sessions/{session_id}/transcript").json()
        assert transcript["count"] == 1
        assert transcript["entries"][0]["text"] == "Hi, this is Sam"

    def test_customer_message_then_complete(self, client, connector):
        session_id = _start(client)["id"]

        entry = client.post(
            f"/api/v1/sessions/{session_id}/customer-messages", json={"text": "Still open?"}
        ).json()
        assert entry["speaker"] == "customer"
        assert connector.latest(session_id).sent[-1] == {"type": "user-text", "text": "Still open?"}

        completed = client.post(f"/api/v1/sessions/{session_id}/complete").json()
        assert completed["status"] == "completed"
        assert completed["endedAt"] is not None

        late = client.post(
            f"/api/v1/sessions/{session_id}/customer-messages", json={"text": "hello?"}
        )
        assert late.status_code == 503
        assert late.json()["detail"]["error"] == "not_connected"

    def test_engine_unavailable_returns_502(self, client, connector):
        connector.fail_always = True

        response = client.post("/api/v1/sessions", json={"channelIdentity": "+15550001"})

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "engine_connection_error"


class TestDashboardStream:
    def test_missing_organization_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/v1/dashboard/stream"):
                pass
        assert exc_info.value.code == 1008

    def test_ack_ping_and_live_events(self, client):
        with client.websocket_connect("/api/v1/dashboard/stream?organization_id=org-a") as ws:
            ack = ws.receive_json()
            assert ack["type"] == "connection-ack"
            assert ack["organizationId"] == "org-a"

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            session_id = _start(client)["id"]
            started = _receive_until(ws, "session-started")
            assert started["sessionId"] == session_id
            assert started["payload"]["organizationId"] == "org-a"

    def test_replay_on_connect(self, client):
        session_id = _start(client)["id"]

        with client.websocket_connect(
            "/api/v1/dashboard/stream?organization_id=org-a&replay=true"
        ) as ws:
            assert ws.receive_json()["type"] == "connection-ack"
            snapshot = ws.receive_json()
            assert snapshot["type"] == "session-snapshot"
            assert snapshot["sessionId"] == session_id

    def test_commands_take_over_and_read_history(self, client):
        session_id = _start(client)["id"]

        with client.websocket_connect("/api/v1/dashboard/stream?organization_id=org-a") as ws:
            ws.receive_json()

            ws.send_json(
                {"type": "takeover_conversation", "sessionId": session_id, "agentId": "agent-9"}
            )
            started = _receive_until(ws, "human-control-started")
            assert started["payload"]["humanAgentId"] == "agent-9"

            ws.send_json(
                {
                    "type": "send_human_message",
                    "sessionId": session_id,
                    "agentId": "agent-9",
                    "text": "On it",
                }
            )
            _receive_until(ws, "transcript-entry")

            ws.send_json({"type": "get_conversation_history", "sessionId": session_id})
            history = _receive_until(ws, "conversation-history")
            assert [e["text"] for e in history["payload"]["entries"]] == ["On it"]

    def test_commands_cannot_reach_other_organizations(self, client):
        other_id = _start(client, identity="+15550002")["id"]

        with client.websocket_connect("/api/v1/dashboard/stream?organization_id=org-a") as ws:
            ws.receive_json()

            ws.send_json({"type": "takeover_conversation", "sessionId": other_id, "agentId": "x"})
            error = _receive_until(ws, "error")
            assert error["payload"]["error"] == "session_not_found"

        assert client.get(f"/api/v1/sessions/{other_id}").json()["controlOwner"] == "ai"

    def test_invalid_message_gets_error_envelope(self, client):
        with client.websocket_connect("/api/v1/dashboard/stream?organization_id=org-a") as ws:
            ws.receive_json()

            ws.send_text("not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["payload"]["error"] == "invalid_message"
