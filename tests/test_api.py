"""
Tests for the REST API

Runs the FastAPI app in-process with a scripted backend. The client is used
as a context manager so background relay tasks keep their event loop
between requests.
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from agentrelay.agent.directory import AgentDirectory
from agentrelay.server import api, streaming
from agentrelay.server.streaming import StreamManager

from conftest import ScriptedBackend, StreamScript, make_directory, make_orchestrator

FINISHED = {"completed", "cancelled", "failed"}


@pytest.fixture
def install(monkeypatch):
    """Install an orchestrator (and a fresh stream manager) for one test."""
    monkeypatch.setattr(streaming, "_stream_manager", StreamManager())

    def _install(backend=None, directory=None):
        orchestrator = make_orchestrator(
            backend or ScriptedBackend(),
            directory if directory is not None else make_directory("A", "B"),
        )
        api.set_orchestrator(orchestrator)
        return orchestrator

    yield _install
    api.set_orchestrator(None)


def wait_for_run(client, run_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/status/{run_id}").json()
        if status["status"] in FINISHED:
            return status
        time.sleep(0.01)
    raise AssertionError(f"Run {run_id} did not finish")


def parse_sse(body):
    return [
        json.loads(line[len("data: "):])
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


class TestInfoEndpoints:
    """Tests for read-only endpoints."""

    def test_health(self, install):
        install()
        with TestClient(api.app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["agents"] == 2

    def test_agents(self, install):
        install()
        with TestClient(api.app) as client:
            agents = client.get("/agents").json()

        assert [a["name"] for a in agents] == ["A", "B"]
        assert agents[0]["order"] == 1

    def test_unknown_run(self, install):
        install()
        with TestClient(api.app) as client:
            assert client.get("/status/missing").status_code == 404
            assert client.get("/stream/missing").status_code == 404


class TestRelayEndpoints:
    """Tests for starting, observing and stopping relays."""

    def test_full_relay(self, install):
        """A relay runs to completion and its stream replays every event."""
        install(ScriptedBackend({"A": ["plan ready"], "B": ["code ready"]}))

        with TestClient(api.app) as client:
            response = client.post("/relay", json={"message": "build it"})
            assert response.status_code == 200
            body = response.json()
            assert body["status"] == "running"
            assert body["stream_url"] == f"/stream/{body['run_id']}"

            status = wait_for_run(client, body["run_id"])
            events = parse_sse(client.get(body["stream_url"]).text)
            state = client.get("/relay/state").json()

        assert status["status"] == "completed"
        assert [m["text"] for m in status["result"]["agent_messages"]] == ["plan ready", "code ready"]

        assert events[0]["event_type"] == "conversation"
        assert events[-1]["event_type"] == "run_end"
        assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
        assert all(e["turn_id"] == body["run_id"] for e in events)

        assert state["is_running"] is False
        assert len(state["relay_turns"]) == 1
        assert state["cost"]["total_queries"] == 2

    def test_stream_from_sequence(self, install):
        install()
        with TestClient(api.app) as client:
            run_id = client.post("/relay", json={"message": "go"}).json()["run_id"]
            wait_for_run(client, run_id)

            all_events = parse_sse(client.get(f"/stream/{run_id}").text)
            tail = parse_sse(client.get(f"/stream/{run_id}?from_seq=2").text)

        assert [e["sequence"] for e in tail] == [e["sequence"] for e in all_events[2:]]

    def test_empty_roster(self, install):
        install(directory=AgentDirectory())
        with TestClient(api.app) as client:
            response = client.post("/relay", json={"message": "hello"})

        assert response.status_code == 503

    def test_empty_message_rejected(self, install):
        install()
        with TestClient(api.app) as client:
            assert client.post("/relay", json={"message": ""}).status_code == 422

    def test_conflict_and_stop(self, install):
        """A second relay is refused while one runs; stop cancels it."""
        install(ScriptedBackend({"A": [StreamScript(["thinking"], hang=True)]}))

        with TestClient(api.app) as client:
            run_id = client.post("/relay", json={"message": "first"}).json()["run_id"]

            assert client.post("/relay", json={"message": "second"}).status_code == 409
            assert client.post("/relay/stop").json() == {"stopped": True}

            status = wait_for_run(client, run_id)
            assert client.post("/relay/stop").json() == {"stopped": False}

        assert status["status"] == "cancelled"

    def test_reset(self, install):
        orchestrator = install()
        before = orchestrator.conversation_id

        with TestClient(api.app) as client:
            run_id = client.post("/relay", json={"message": "go"}).json()["run_id"]
            wait_for_run(client, run_id)
            response = client.post("/relay/reset")
            state = client.get("/relay/state").json()

        assert response.json()["conversation_id"] != before
        assert state["relay_turns"] == []

    def test_runs_and_debug_log(self, install):
        orchestrator = install(ScriptedBackend({"A": ["plan"], "B": ["done"]}))

        with TestClient(api.app) as client:
            run_id = client.post("/relay", json={"message": "hello relay"}).json()["run_id"]
            wait_for_run(client, run_id)

            runs = client.get("/runs").json()
            log = client.get("/debug/log", params={"conversation_id": orchestrator.conversation_id})

        assert [r["run_id"] for r in runs] == [run_id]
        assert log.headers["content-type"].startswith("text/plain")
        assert "User: hello relay" in log.text
        assert "A: plan" in log.text
        assert "User -> A" in log.text
