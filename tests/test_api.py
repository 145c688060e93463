"""HTTP tests for the FastAPI app, with the model replaced by scripted fakes."""

import json
import time
import uuid
from collections import defaultdict
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt as jose_jwt

import main
from tests.fakes import FakeAnthropic, full_audit_script, full_polish_script, message, text

ARTICLE = (
    "## Why Standing Desks\n\nStanding desks are popular in offices.\n\n"
    "### Health Benefits\n\nStanding more often helps circulation."
)


def _auth(user_id: str = "user-1") -> dict:
    token = jose_jwt.encode({"sub": user_id, "email": f"{user_id}@example.com"}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def _wait_for(fetch, done, timeout: float = 5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        value = fetch()
        if done(value):
            return value
        time.sleep(0.02)
    raise AssertionError(f"Timed out waiting; last value: {value}")


def _data_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def scripted(monkeypatch):
    """Swap the agents' Anthropic client for scripted fakes."""
    def _script(agent, turns):
        monkeypatch.setattr(agent, "client", FakeAnthropic(turns))
        monkeypatch.setattr(agent, "turn_delay", 0)
        monkeypatch.setattr(agent, "retry_delay", 0)
    return _script


@pytest.fixture
def api_workflow(client) -> dict:
    resp = client.post("/workflows", json={"title": "Guide to standing desks"}, headers=_auth())
    assert resp.status_code == 201
    return resp.json()


def _progress(client, session_id):
    return client.get(f"/sessions/{session_id}/progress").json()


def _wait_until_finished(client, session_id):
    return _wait_for(
        lambda: _progress(client, session_id),
        lambda p: p["progress"]["status"] in ("completed", "error"),
    )


class TestWorkflows:
    def test_create_and_read(self, client, api_workflow):
        assert [s["id"] for s in api_workflow["content"]["steps"]] == ["content-audit", "final-polish"]

        resp = client.get(f"/workflows/{api_workflow['id']}", headers=_auth())
        assert resp.status_code == 200
        assert resp.json()["title"] == "Guide to standing desks"

    def test_requires_token(self, client):
        assert client.post("/workflows", json={"title": "x"}).status_code == 401
        assert client.post("/workflows", json={"title": "x"},
                           headers={"Authorization": "Bearer garbage"}).status_code == 401

    def test_other_users_workflow_is_hidden(self, client, api_workflow):
        resp = client.get(f"/workflows/{api_workflow['id']}", headers=_auth("user-2"))
        assert resp.status_code == 404

    def test_blank_title_rejected(self, client):
        assert client.post("/workflows", json={"title": "  "}, headers=_auth()).status_code == 422

    def test_unknown_session_kind(self, client, api_workflow):
        resp = client.get(f"/workflows/{api_workflow['id']}/sessions?kind=bogus", headers=_auth())
        assert resp.status_code == 400


class TestSemanticAuditEndpoints:
    def test_audit_runs_in_background_and_streams(self, client, scripted, api_workflow):
        scripted(main.semantic_audit_agent, full_audit_script())

        resp = client.post(
            f"/workflows/{api_workflow['id']}/semantic-audit",
            json={"article": ARTICLE, "context": "Outline"},
            headers=_auth(),
        )
        assert resp.status_code == 202
        started = resp.json()
        assert started["version"] == 1
        session_id = started["session_id"]

        progress = _wait_until_finished(client, session_id)
        assert progress["progress"]["status"] == "completed"
        assert progress["progress"]["completed"] == 2
        assert progress["progress"]["citations_used"] == 3

        article = client.get(f"/sessions/{session_id}/article").json()
        assert article["article"].startswith("## Why Standing Desks\n\nStanding desks let you alternate postures.")

        workflow = client.get(f"/workflows/{api_workflow['id']}", headers=_auth()).json()
        audit_step = next(s for s in workflow["content"]["steps"] if s["id"] == "content-audit")
        assert audit_step["outputs"]["seoOptimizedArticle"] == article["article"]

        events = _data_events(client.get(f"/sessions/{session_id}/stream").text)
        assert events[-1]["type"] == "completed"

        sessions = client.get(f"/workflows/{api_workflow['id']}/sessions?kind=semantic_audit", headers=_auth()).json()
        assert [s["id"] for s in sessions["sessions"]] == [session_id]

    def test_missing_article(self, client, api_workflow):
        resp = client.post(f"/workflows/{api_workflow['id']}/semantic-audit", json={}, headers=_auth())
        assert resp.status_code == 400

    def test_failed_session_can_be_retried(self, client, scripted, api_workflow):
        scripted(main.semantic_audit_agent, [message(text("Shall I continue?"))] * 4)
        session_id = client.post(
            f"/workflows/{api_workflow['id']}/semantic-audit", json={"article": ARTICLE}, headers=_auth()
        ).json()["session_id"]
        assert _wait_until_finished(client, session_id)["progress"]["status"] == "error"

        scripted(main.semantic_audit_agent, full_audit_script())
        resp = client.post(f"/sessions/{session_id}/retry", headers=_auth())
        assert resp.status_code == 202
        # The first retry already claimed the session
        assert client.post(f"/sessions/{session_id}/retry", headers=_auth()).status_code == 409
        progress = _wait_for(
            lambda: _progress(client, session_id),
            lambda p: p["progress"]["status"] == "completed",
        )
        assert progress["progress"]["completed"] == 2

    def test_retry_rejects_sessions_that_did_not_fail(self, client, scripted, api_workflow):
        scripted(main.semantic_audit_agent, full_audit_script())
        session_id = client.post(
            f"/workflows/{api_workflow['id']}/semantic-audit", json={"article": ARTICLE}, headers=_auth()
        ).json()["session_id"]
        _wait_until_finished(client, session_id)

        assert client.post(f"/sessions/{session_id}/retry", headers=_auth()).status_code == 409


class TestFinalPolishEndpoints:
    def test_polish_defaults_to_the_audited_article(self, client, scripted, api_workflow):
        scripted(main.semantic_audit_agent, full_audit_script())
        audit_id = client.post(
            f"/workflows/{api_workflow['id']}/semantic-audit", json={"article": ARTICLE}, headers=_auth()
        ).json()["session_id"]
        _wait_until_finished(client, audit_id)

        scripted(main.final_polish_agent, full_polish_script())
        resp = client.post(f"/workflows/{api_workflow['id']}/final-polish", json={}, headers=_auth())
        assert resp.status_code == 202
        polish_id = resp.json()["session_id"]

        progress = _wait_until_finished(client, polish_id)
        assert progress["session"]["original_article"].startswith(
            "## Why Standing Desks\n\nStanding desks let you alternate postures."
        )
        assert progress["progress"]["avg_engagement_score"] == 7.0

        workflow = client.get(f"/workflows/{api_workflow['id']}", headers=_auth()).json()
        polish_step = next(s for s in workflow["content"]["steps"] if s["id"] == "final-polish")
        assert polish_step["outputs"]["polishSummary"]["conflictsResolved"] == 1

    def test_polish_without_any_article(self, client, api_workflow):
        resp = client.post(f"/workflows/{api_workflow['id']}/final-polish", json={}, headers=_auth())
        assert resp.status_code == 400
        assert resp.json()["detail"] == "article is required"


class TestSessionEndpoints:
    def test_unknown_session(self, client):
        missing = str(uuid.uuid4())
        assert client.get(f"/sessions/{missing}/progress").status_code == 404
        assert client.get(f"/sessions/{missing}/stream").status_code == 404

    def test_stream_replays_terminal_state_without_backlog(self, client):
        workflow = main.store.create_workflow("Replay", main.DEFAULT_STEPS, user_id="user-1")
        session = main.store.create_session(
            workflow_id=workflow["id"], kind="semantic_audit", step_id="content-audit", original_article=ARTICLE
        )
        main.store.update_session(session["id"], status="error", error_message="Upstream overloaded")

        events = _data_events(client.get(f"/sessions/{session['id']}/stream").text)

        assert events == [{
            "type": "error",
            "message": "Session failed",
            "error": "Upstream overloaded",
            "replayed": True,
        }]

    def test_startup_marks_interrupted_sessions(self):
        workflow = main.store.create_workflow("Restart", main.DEFAULT_STEPS, user_id="user-1")
        running = main.store.create_session(
            workflow_id=workflow["id"], kind="final_polish", step_id="final-polish", original_article=ARTICLE
        )
        main.store.update_session(running["id"], status="polishing")
        queued = main.store.create_session(
            workflow_id=workflow["id"], kind="semantic_audit", step_id="content-audit", original_article=ARTICLE
        )
        time.sleep(0.01)

        with TestClient(main.app):
            pass

        for session in (running, queued):
            stored = main.store.get_session(session["id"])
            assert stored["status"] == "error"
            assert stored["error_message"] == "Interrupted by server restart"


class TestTargetPageEndpoints:
    def test_research_runs_in_background(self, client, monkeypatch):
        claude = AsyncMock(return_value={
            "analysis": "Example sells desks.",
            "gaps": [{"category": "Pricing", "question": "Enterprise pricing?", "importance": "high"}],
            "sources": [],
        })
        crawl = AsyncMock(return_value=[{"url": "https://example.com", "title": "Example", "content": "Desks"}])
        monkeypatch.setattr(main.target_page_service, "claude_caller", claude)
        monkeypatch.setattr(main.target_page_service, "crawl_fn", crawl)
        tp_id = f"tp-{uuid.uuid4().hex[:8]}"

        resp = client.post(f"/target-pages/{tp_id}/research", json={"target_url": "https://example.com"},
                           headers=_auth())
        assert resp.status_code == 202

        record = _wait_for(
            lambda: client.get(f"/target-pages/{tp_id}", headers=_auth()).json(),
            lambda r: r["research_status"] != "in_progress",
        )
        assert record["research_status"] == "completed"
        assert record["research_output"]["gaps"][0]["question"] == "Enterprise pricing?"

        resp = client.put(f"/target-pages/{tp_id}/client-input", json={"client_answers": {"0": "From $400"}},
                          headers=_auth())
        assert resp.status_code == 200
        assert resp.json()["metadata"]["clientAnswers"] == {"0": "From $400"}

    def test_running_research_conflicts(self, client):
        tp_id = f"tp-{uuid.uuid4().hex[:8]}"
        main.target_page_service._update(tp_id, research_status="in_progress", research_started_at=datetime.utcnow())

        resp = client.post(f"/target-pages/{tp_id}/research", json={"target_url": "https://example.com"},
                           headers=_auth())
        assert resp.status_code == 409

    def test_invalid_url(self, client):
        resp = client.post("/target-pages/tp-1/research", json={"target_url": "example.com"}, headers=_auth())
        assert resp.status_code == 422

    def test_brief_before_research(self, client):
        tp_id = f"tp-{uuid.uuid4().hex[:8]}"
        assert client.post(f"/target-pages/{tp_id}/brief", headers=_auth()).status_code == 404
        assert client.get(f"/target-pages/{tp_id}", headers=_auth()).status_code == 404
        resp = client.put(f"/target-pages/{tp_id}/client-input", json={"additional_info": "x"}, headers=_auth())
        assert resp.status_code == 404

    def test_brief_without_client_input(self, client):
        tp_id = f"tp-{uuid.uuid4().hex[:8]}"
        main.target_page_service._update(
            tp_id, research_status="completed", research_output_json=json.dumps({"analysis": "a", "gaps": []})
        )
        assert client.post(f"/target-pages/{tp_id}/brief", headers=_auth()).status_code == 400


class TestHealth:
    def test_health_and_info(self, client):
        health = client.get("/health").json()
        assert health["status"] == "ok"
        assert health["api_key_set"] is True

        info = client.get("/info").json()
        assert info["agents"] == ["semantic_audit", "final_polish", "target_page_intelligence"]

    def test_agent_health_requires_token(self, client):
        assert client.get("/admin/agent-health").status_code == 401

    def test_agent_health_report(self, client):
        report = client.get("/admin/agent-health", headers=_auth()).json()

        tests = [c["test"] for c in report["results"]]
        assert "Recent session success rate" in tests
        assert "Agent prerequisites" in tests
        assert sum(report["summary"].values()) == len(report["results"])


class TestRateLimit:
    def test_writes_over_the_limit_get_429(self, client, monkeypatch):
        monkeypatch.setattr(main, "RATE_LIMIT", 2)
        monkeypatch.setattr(main, "_rate_buckets", defaultdict(list))

        statuses = [
            client.post("/workflows", json={"title": f"Draft {i}"}, headers=_auth()).status_code
            for i in range(3)
        ]

        assert statuses == [201, 201, 429]
        resp = client.post("/workflows", json={"title": "Draft 4"}, headers=_auth())
        assert resp.json()["detail"].startswith("Rate limit exceeded")

    def test_reads_are_not_counted(self, client, monkeypatch):
        monkeypatch.setattr(main, "RATE_LIMIT", 1)
        monkeypatch.setattr(main, "_rate_buckets", defaultdict(list))

        assert all(client.get("/health").status_code == 200 for _ in range(3))
        assert client.post("/workflows", json={"title": "Draft"}, headers=_auth()).status_code == 201
