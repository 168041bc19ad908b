"""Test script for the HTTP API."""

from fastapi.testclient import TestClient

from localpipeline.app.main import create_app
from localpipeline.persistence.failure_store import FailureRecord
from localpipeline.providers.base import CardStatus

from conftest import RecordingProvider


def _github_issue(number: int, title: str) -> dict:
    return {
        "action": "labeled",
        "issue": {"number": number, "title": title, "state": "open", "labels": [{"name": "agent"}]},
        "repository": {"full_name": "acme/web"},
    }


def _client(pipeline) -> TestClient:
    return TestClient(create_app(orchestrator=pipeline.orchestrator, run_loop=False))


def test_root_and_health(make_pipeline):
    with _client(make_pipeline()) as client:
        assert client.get("/").json()["status"] == "running"
        assert client.get("/health").json() == {"status": "healthy"}


def test_agents_snapshot(make_pipeline):
    with _client(make_pipeline()) as client:
        agents = client.get("/agents").json()

    assert [a["name"] for a in agents] == ["ember", "tide", "gale", "terra"]
    assert agents[0] == {"name": "ember", "status": "idle", "retryCount": 0, "retryInSeconds": None}


def test_release_unknown_agent_is_404(make_pipeline):
    with _client(make_pipeline()) as client:
        assert client.post("/agents/blaze/release").status_code == 404


def test_linear_webhook_dispatches(make_pipeline):
    body = {
        "type": "Issue",
        "action": "update",
        "updatedFrom": {"labelIds": ["lbl-1"]},
        "data": {"identifier": "LIN-42", "title": "Fix login redirect", "priority": 1},
    }
    with _client(make_pipeline()) as client:
        response = client.post("/webhooks/linear", json=body)
        assert response.json() == {"dispatched": True, "agent": "ember", "queued": False}

        ignored = client.post("/webhooks/linear", json={"type": "Comment", "action": "create"})
        assert ignored.json() == {"ignored": True}

        events = client.get("/activity", params={"agent": "ember"}).json()
        assert events[0]["event"] == "dispatched"
        assert events[0]["workItemId"] == "LIN-42"


def test_github_webhooks_queue_and_release(make_pipeline):
    pipeline = make_pipeline(agent_names=("ember",))
    with _client(pipeline) as client:
        first = client.post("/webhooks/github", json=_github_issue(1, "First")).json()
        second = client.post("/webhooks/github", json=_github_issue(2, "Second")).json()
        assert first == {"dispatched": True, "agent": "ember", "queued": False}
        assert second == {"dispatched": False, "agent": None, "queued": True}
        assert [item["id"] for item in client.get("/queue").json()] == ["#2"]

        # Releasing the slot hands it straight to the queued item
        released = client.post("/agents/ember/release").json()
        assert released["status"] == "provisioning"
        assert released["workItemId"] == "#2"
        assert client.get("/queue").json() == []


def test_github_pr_merge_moves_card_to_done(make_pipeline):
    provider = RecordingProvider()
    body = {
        "action": "closed",
        "pull_request": {"merged": True, "head": {"ref": "agent/tide/LIN-9-add-export"}},
    }
    with _client(make_pipeline(providers=[provider])) as client:
        assert client.post("/webhooks/github", json=body).json() == {"merged": "LIN-9", "moved": True}
        assert client.post("/webhooks/github", json={"action": "opened"}).json() == {"ignored": True}

    assert provider.moves == [("LIN-9", CardStatus.DONE)]


def test_failures_endpoint(make_pipeline):
    pipeline = make_pipeline()
    pipeline.failures.record(FailureRecord(
        id="LIN-5",
        title="Broken build",
        agent="gale",
        attempts=3,
        last_error="Process exited with code 1",
        failed_at="2024-05-01T12:00:00+00:00",
    ))

    with _client(pipeline) as client:
        failures = client.get("/failures").json()

    assert failures == [{
        "id": "LIN-5",
        "title": "Broken build",
        "agent": "gale",
        "attempts": 3,
        "lastError": "Process exited with code 1",
        "failedAt": "2024-05-01T12:00:00+00:00",
    }]
