import asyncio
import json

import pytest

from outreach.clients.stub import StubJobRunnerClient
from outreach.domain.errors import DomainInvariantError, SourceNotFoundError
from outreach.domain.models import DownloadedDocument, JobState, JobStatus, RecoveryStatus, SourceSpec
from outreach.domain.use_cases.recovery import TIER_ARCHIVE, TIER_OUTPUT_TEXT, TIER_STATUS_OUTPUT, TIER_STRUCTURED
from tests.unit.engine_seed import Engine, build_engine, profile


async def _launch_one(engine: Engine) -> str:
    started = await engine.sequencer.resume_or_start(
        campaign_id="camp-1",
        sources=[SourceSpec(source_id="u1", template="https://search.example/u1")],
        quota=50,
    )
    await engine.sequencer.advance(session_id=started.session_id)
    return started.session_id


async def _source_status(engine: Engine, session_id: str) -> tuple[str, int, str | None]:
    source = await engine.repository.get_source_state(session_id=session_id, source_id="u1")
    assert source is not None
    return source.status, source.retrieved_count, source.failure_reason


@pytest.mark.unit
def test_structured_tier_recovers_enriched_records() -> None:
    engine = build_engine()
    engine.runner.structured_results["job-1"] = {"resultObject": [profile(1), profile(2), profile(1)]}

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.RECOVERED
        assert result.tier == TIER_STRUCTURED
        assert result.count == 2
        assert result.records[0]["connectionDegree"] == "3rd+"
        assert result.records[0]["recoveryMetadata"]["tier"] == TIER_STRUCTURED
        assert await _source_status(engine, session_id) == ("completed", 2, None)

        session = await engine.repository.get_session(session_id=session_id)
        assert session is not None
        assert session.execution_history[-1]["event"] == "recovery"
        assert engine.repository.completions["job-1"]["results_count"] == 2

    asyncio.run(_run())
    assert engine.metrics.counter("recovery_attempts_total", tier=TIER_STRUCTURED, outcome="records") == 1


@pytest.mark.unit
def test_already_retrieved_output_completes_without_known_error() -> None:
    engine = build_engine()
    engine.runner.statuses["job-1"] = JobStatus(
        state=JobState.FINISHED,
        output="You have already retrieved all results from this search",
    )

    async def _run() -> None:
        session_id = await _launch_one(engine)
        for _ in range(2):
            result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")
            assert result.status == RecoveryStatus.ALREADY_RETRIEVED
            assert result.count == 0
            assert result.tier == TIER_OUTPUT_TEXT
            assert await _source_status(engine, session_id) == ("completed", 0, None)

    asyncio.run(_run())
    assert engine.known_errors.errors == {}


@pytest.mark.unit
def test_no_results_with_failure_exit_code_records_one_known_error() -> None:
    engine = build_engine()
    engine.runner.statuses["job-1"] = JobStatus(
        state=JobState.FINISHED,
        output="Search finished. No results found.",
        exit_code=1,
    )

    async def _run() -> None:
        session_id = await _launch_one(engine)
        first = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")
        second = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        for result in (first, second):
            assert result.status == RecoveryStatus.NO_RESULTS
            assert result.category == "no_results_found"
            assert result.count == 0
        assert await _source_status(engine, session_id) == ("completed", 0, None)

    asyncio.run(_run())
    assert list(engine.known_errors.errors) == ["job-1"]
    record = engine.known_errors.errors["job-1"]
    assert record.category == "no_results_found"
    assert record.exit_code == 1
    assert record.occurrences == 2


@pytest.mark.unit
def test_download_url_result_is_followed() -> None:
    engine = build_engine()
    url = "https://files.example/job-1.json"
    engine.runner.structured_results["job-1"] = {"jsonUrl": url}
    engine.runner.documents[url] = DownloadedDocument(
        url=url,
        text=json.dumps([profile(1), profile(2)]),
        content_type="application/json",
    )

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.RECOVERED
        assert result.tier == TIER_STRUCTURED
        assert result.count == 2

    asyncio.run(_run())
    assert ("download", url) in engine.runner.calls


@pytest.mark.unit
def test_archive_tier_tries_known_object_names() -> None:
    engine = build_engine(archive_base_url="https://archive.example/bucket/")
    url = "https://archive.example/bucket/results_job-1.json"
    engine.runner.documents[url] = DownloadedDocument(
        url=url,
        text="profileUrl,fullName\nhttps://p/1,Person 1\nhttps://p/2,Person 2\n",
        content_type="text/csv",
    )

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.RECOVERED
        assert result.tier == TIER_ARCHIVE
        assert [record["fullName"] for record in result.records] == ["Person 1", "Person 2"]

    asyncio.run(_run())
    downloads = [target for kind, target in engine.runner.calls if kind == "download"]
    assert downloads == [
        "https://archive.example/bucket/search_results_job-1.json",
        "https://archive.example/bucket/results_job-1.json",
    ]


@pytest.mark.unit
def test_identity_less_batch_is_treated_as_no_results() -> None:
    engine = build_engine()
    engine.runner.structured_results["job-1"] = [{"title": "hidden"}, {"title": "hidden too"}]

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.NO_RESULTS
        assert result.count == 0
        assert await _source_status(engine, session_id) == ("completed", 0, None)

    asyncio.run(_run())
    assert engine.known_errors.errors["job-1"].details["masked"] is True
    assert ("fetch-output", "job-1") not in engine.runner.calls


@pytest.mark.unit
def test_manual_stop_fails_source_with_known_error() -> None:
    engine = build_engine()
    engine.runner.statuses["job-1"] = JobStatus(state=JobState.FINISHED, exit_code=143, end_type="killed")

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.FAILED
        assert result.category == "manually_stopped"
        assert await _source_status(engine, session_id) == ("failed", 0, "manually_stopped")

    asyncio.run(_run())
    assert engine.known_errors.errors["job-1"].category == "manually_stopped"


@pytest.mark.unit
def test_invalid_parameters_fail_source_as_argument_error() -> None:
    engine = build_engine()
    engine.runner.statuses["job-1"] = JobStatus(
        state=JobState.FINISHED,
        output="Error: Phantom argument is invalid: search => must be string",
        exit_code=1,
    )

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.FAILED
        assert result.category == "argument_validation_error"
        assert (await _source_status(engine, session_id))[0] == "failed"

    asyncio.run(_run())


@pytest.mark.unit
def test_running_job_is_reported_without_side_effects() -> None:
    engine = build_engine()
    engine.runner.statuses["job-1"] = JobStatus(state=JobState.RUNNING)

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.JOB_RUNNING
        assert (await _source_status(engine, session_id))[0] == "running"

    asyncio.run(_run())
    assert engine.known_errors.errors == {}
    assert "job-1" not in engine.repository.completions


@pytest.mark.unit
def test_exhausted_chain_classifies_and_fails_source_then_late_success_completes_it() -> None:
    engine = build_engine()

    async def _run() -> None:
        session_id = await _launch_one(engine)
        exhausted = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert exhausted.status == RecoveryStatus.EXHAUSTED
        assert exhausted.tier is None
        assert exhausted.category == "unknown_error"
        assert (await _source_status(engine, session_id))[0] == "failed"

        engine.runner.structured_results["job-1"] = [profile(7)]
        recovered = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert recovered.status == RecoveryStatus.RECOVERED
        assert await _source_status(engine, session_id) == ("completed", 1, None)

    asyncio.run(_run())


@pytest.mark.unit
def test_completed_source_is_not_downgraded_by_later_failure() -> None:
    engine = build_engine()
    engine.runner.structured_results["job-1"] = [profile(1), profile(2)]

    async def _run() -> None:
        session_id = await _launch_one(engine)
        await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        del engine.runner.structured_results["job-1"]
        engine.runner.statuses["job-1"] = JobStatus(state=JobState.FINISHED, exit_code=137)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.FAILED
        assert await _source_status(engine, session_id) == ("completed", 2, None)

    asyncio.run(_run())


@pytest.mark.unit
def test_unknown_handle_without_source_is_exhausted_as_not_found() -> None:
    engine = build_engine()

    result = asyncio.run(engine.recovery.recover(job_handle="ghost"))

    assert result.status == RecoveryStatus.EXHAUSTED
    assert result.category == "agent_not_found"
    assert result.session_id is None
    assert engine.repository.completions["ghost"]["status"] == "failed"
    assert engine.known_errors.errors["ghost"].category == "agent_not_found"


@pytest.mark.unit
def test_slow_tier_times_out_and_next_tier_is_tried() -> None:
    class _SlowStructuredRunner(StubJobRunnerClient):
        async def fetch_structured_result(self, job_handle: str) -> object:
            await asyncio.sleep(1)
            return await super().fetch_structured_result(job_handle)

    runner = _SlowStructuredRunner()
    runner.outputs["job-1"] = {"results": [profile(3)]}
    engine = build_engine(runner=runner, tier_timeout_seconds=0.01)

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.RECOVERED
        assert result.tier == TIER_STATUS_OUTPUT

    asyncio.run(_run())
    assert engine.metrics.counter("recovery_attempts_total", tier=TIER_STRUCTURED, outcome="timeout") == 1


@pytest.mark.unit
def test_recover_rejects_unknown_or_unlaunched_sources() -> None:
    engine = build_engine()

    async def _run() -> None:
        started = await engine.sequencer.resume_or_start(
            campaign_id="camp-1",
            sources=[SourceSpec(source_id="u1", template="t")],
            quota=10,
        )
        with pytest.raises(SourceNotFoundError):
            await engine.recovery.recover(job_handle="job-1", session_id=started.session_id, source_id="nope")
        with pytest.raises(DomainInvariantError):
            await engine.recovery.recover(job_handle="job-1", session_id=started.session_id, source_id="u1")

    asyncio.run(_run())


@pytest.mark.unit
def test_unparseable_download_falls_through_to_next_tier() -> None:
    engine = build_engine()
    url = "https://files.example/job-1.csv"
    engine.runner.structured_results["job-1"] = {"csvUrl": url}
    engine.runner.documents[url] = DownloadedDocument(
        url=url,
        text="profileUrl,fullName\n" + "x" * 200000 + ",Person\n",
        content_type="text/csv",
    )
    engine.runner.outputs["job-1"] = {"results": [profile(4)]}

    async def _run() -> None:
        session_id = await _launch_one(engine)
        result = await engine.recovery.recover(job_handle="job-1", session_id=session_id, source_id="u1")

        assert result.status == RecoveryStatus.RECOVERED
        assert result.tier == TIER_STATUS_OUTPUT
        assert await _source_status(engine, session_id) == ("completed", 1, None)

    asyncio.run(_run())
    assert engine.metrics.counter("recovery_attempts_total", tier=TIER_STRUCTURED, outcome="empty") == 1
