from fastapi.testclient import TestClient
import pytest

from outreach.api.http_app import build_app
from outreach.clients.stub import StubJobRunnerClient
from outreach.domain.errors import RunnerRejectedError
from outreach.domain.models import JobState, JobStatus
from outreach.roles import validate_role
from outreach.services.bootstrap import RuntimeContainer, build_runtime_container
from outreach.services.settings import EngineSettings
from tests.integration.api_seed import seed_sequence

MISSING_SESSION_ID = "seq_01ARZ3NDEKTSV4RRFFQ69G5FAV"


def _client_for(runner: StubJobRunnerClient) -> tuple[TestClient, RuntimeContainer]:
    role = validate_role("api")
    container = build_runtime_container(role, settings=EngineSettings(), runner=runner)
    app = build_app(
        role=role.name,
        run_id="integration-api",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
    )
    return TestClient(app), container


@pytest.mark.integration
def test_system_endpoints_report_role() -> None:
    client, _ = _client_for(StubJobRunnerClient())
    with client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "role": "api", "mode": "engine"}
    assert ready.status_code == 200
    assert ready.json()["worker_loop_enabled"] is False
    assert ready.json()["worker_loop_ready"] is True


@pytest.mark.integration
def test_sequence_lifecycle_over_http() -> None:
    runner = StubJobRunnerClient()
    runner.structured_results["job-1"] = [{"profileUrl": "https://p/1", "fullName": "One"}]
    runner.structured_results["job-2"] = [{"profileUrl": "https://p/2", "fullName": "Two"}]
    client, _ = _client_for(runner)

    with client:
        session_id = seed_sequence(client=client, campaign_id="camp-http")

        resumed = client.post(
            "/sequences",
            json={"campaign_id": "camp-http", "sources": [{"id": "x", "template": "t"}], "quota": 5},
        )
        assert resumed.status_code == 200
        assert resumed.json()["status"] == "resumed"
        assert resumed.json()["session_id"] == session_id

        first = client.post(f"/sequences/{session_id}/next")
        assert first.status_code == 200
        assert first.json()["status"] == "launched"
        assert first.json()["source_id"] == "u1"
        assert first.json()["allocated"] == 200

        second = client.post(f"/sequences/{session_id}/next", json={"overrides": {"result_count": 5}})
        assert second.status_code == 200
        assert second.json()["source_id"] == "u2"

        status = client.get(f"/sequences/{session_id}")
        assert status.status_code == 200
        body = status.json()
        assert body["current_sequence"] == 2
        assert body["total_distributed"] + body["remaining"] == body["total_quota"]
        assert body["completed"] == 1
        assert body["running"] == 1
        assert body["progress_percentage"] == 100.0

        final = client.post(f"/sequences/{session_id}/next")
        assert final.status_code == 200
        assert final.json()["status"] == "completed"

    assert runner.launches[1].result_count == 5


@pytest.mark.integration
def test_start_with_execute_next_launches_first_source() -> None:
    client, _ = _client_for(StubJobRunnerClient())
    with client:
        response = client.post(
            "/sequences",
            json={
                "campaign_id": "camp-exec",
                "sources": [{"id": "u1", "template": "t", "start_page": 2, "page_count": 3}],
                "quota": 10,
                "execute_next": True,
            },
        )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "new"
    assert body["execution"]["status"] == "launched"
    assert body["execution"]["allocated"] == 75


@pytest.mark.integration
@pytest.mark.parametrize(
    "payload",
    [
        {"campaign_id": "c", "sources": [], "quota": 10},
        {"campaign_id": "c", "sources": [{"id": "u1", "template": "t"}], "quota": 0},
        {"campaign_id": "c", "sources": [{"id": "u1", "template": "t", "priority": -1}], "quota": 10},
        {"campaign_id": "c", "sources": [{"id": "u1", "template": "t"}, {"id": "u1", "template": "t"}], "quota": 10},
    ],
)
def test_invalid_configuration_is_a_bad_request(payload: dict[str, object]) -> None:
    client, container = _client_for(StubJobRunnerClient())
    with client:
        response = client.post("/sequences", json=payload)

    assert response.status_code == 400
    assert container.repository.sessions == {}  # type: ignore[attr-defined]


@pytest.mark.integration
def test_busy_and_launch_failures_map_to_http_errors() -> None:
    runner = StubJobRunnerClient()
    runner.statuses["job-1"] = JobStatus(state=JobState.RUNNING)
    client, _ = _client_for(runner)

    with client:
        session_id = seed_sequence(client=client, campaign_id="camp-busy")
        assert client.post(f"/sequences/{session_id}/next").status_code == 200
        busy = client.post(f"/sequences/{session_id}/next")
        assert busy.status_code == 409

        failing_session = seed_sequence(client=client, campaign_id="camp-fail")
        runner.launch_errors.append(RunnerRejectedError("runner launch responded 400: bad", status_code=400))
        failed = client.post(f"/sequences/{failing_session}/next")
        assert failed.status_code == 502
        assert "u1" in failed.json()["detail"]

        assert client.get(f"/sequences/{MISSING_SESSION_ID}").status_code == 404
        assert client.post(f"/sequences/{MISSING_SESSION_ID}/next").status_code == 404
        assert client.get("/sequences/not-a-session").status_code == 422


@pytest.mark.integration
def test_recovery_endpoints() -> None:
    runner = StubJobRunnerClient()
    runner.statuses["job-1"] = JobStatus(state=JobState.FINISHED, output="No results found", exit_code=1)
    client, _ = _client_for(runner)

    with client:
        session_id = seed_sequence(client=client, campaign_id="camp-recover")
        pending = client.post(f"/sequences/{session_id}/sources/u1/recover")
        assert pending.status_code == 400

        client.post(f"/sequences/{session_id}/next")
        recovered = client.post(f"/sequences/{session_id}/sources/u1/recover")
        assert recovered.status_code == 200
        assert recovered.json()["status"] == "no_results"
        assert recovered.json()["count"] == 0

        by_handle = client.post("/jobs/job-1/recover")
        assert by_handle.status_code == 200
        assert by_handle.json()["session_id"] == session_id

        missing_source = client.post(f"/sequences/{session_id}/sources/nope/recover", json={"job_handle": "job-1"})
        assert missing_source.status_code == 404

        exhausted = client.post("/jobs/ghost/recover")
        assert exhausted.status_code == 404
        detail = exhausted.json()["detail"]
        assert detail.startswith("recovery exhausted:")
        assert "job_handle=ghost" in detail
        assert "category=agent_not_found" in detail
        assert "session_id=" not in detail


@pytest.mark.integration
def test_known_error_endpoints() -> None:
    runner = StubJobRunnerClient()
    client, _ = _client_for(runner)

    with client:
        assert client.post("/jobs/ghost-1/recover").status_code == 404
        assert client.post("/jobs/ghost-2/recover").status_code == 404

        listed = client.get("/known-errors", params={"category": "agent_not_found"})
        assert listed.status_code == 200
        assert {item["job_handle"] for item in listed.json()["items"]} == {"ghost-1", "ghost-2"}

        assert client.get("/known-errors", params={"category": "bogus"}).status_code == 400

        resolved = client.post("/known-errors/ghost-1/resolve", json={"notes": "handle was mistyped"})
        assert resolved.status_code == 200
        assert resolved.json()["is_resolved"] is True
        assert client.post("/known-errors/missing/resolve", json={"notes": "x"}).status_code == 404
        assert client.post("/known-errors/ghost-2/resolve", json={"notes": "   "}).status_code == 400

        open_items = client.get("/known-errors")
        assert [item["job_handle"] for item in open_items.json()["items"]] == ["ghost-2"]

        stats = client.get("/known-errors/statistics")
        assert stats.json()["items"] == [
            {
                "category": "agent_not_found",
                "total": 2,
                "resolved": 1,
                "unresolved": 1,
                "first_seen": stats.json()["items"][0]["first_seen"],
                "last_seen": stats.json()["items"][0]["last_seen"],
            }
        ]

        categories = client.get("/known-errors/categories")
        assert "credits_exhausted" in categories.json()["categories"]

        recommendation = client.get("/known-errors/recommendations/credits_exhausted")
        assert recommendation.status_code == 200
        assert recommendation.json()["actions"]
        assert client.get("/known-errors/recommendations/bogus").status_code == 400

        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert metrics.json()["counters"]["known_errors_total{category=agent_not_found}"] == 2


@pytest.mark.integration
def test_worker_monitor_role_reports_worker_readiness() -> None:
    role = validate_role("worker-monitor")
    container = build_runtime_container(role, settings=EngineSettings(), runner=StubJobRunnerClient())
    app = build_app(
        role=role.name,
        run_id="integration-monitor",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
    )

    with TestClient(app) as client:
        ready = client.get("/ready")

    assert ready.status_code == 200
    assert ready.json()["worker_loop_enabled"] is True
    assert ready.json()["worker_metrics"]["started"] is True


@pytest.mark.integration
def test_exhausted_source_recovery_names_session_and_source() -> None:
    client, _ = _client_for(StubJobRunnerClient())

    with client:
        session_id = seed_sequence(client=client, campaign_id="camp-exhausted")
        assert client.post(f"/sequences/{session_id}/next").status_code == 200
        response = client.post(f"/sequences/{session_id}/sources/u1/recover")

    assert response.status_code == 404
    detail = response.json()["detail"]
    assert "job_handle=job-1" in detail
    assert "category=unknown_error" in detail
    assert f"session_id={session_id}" in detail
    assert "source_id=u1" in detail
