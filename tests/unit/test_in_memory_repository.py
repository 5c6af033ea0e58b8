import asyncio

import pytest

from outreach.domain.errors import DomainInvariantError
from outreach.domain.models import SessionSnapshot, SourceStateSnapshot
from outreach.repositories.stub import InMemoryDistributionRepository


def _session(session_id: str, campaign_id: str = "camp-1", quota: int = 100) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=session_id,
        campaign_id=campaign_id,
        total_quota=quota,
        current_offset=0,
        total_distributed=0,
        remaining=quota,
        current_sequence=0,
        total_sources=2,
        sources_config=[],
        execution_history=[],
        status="active",
    )


def _source(session_id: str, source_id: str, order: int) -> SourceStateSnapshot:
    return SourceStateSnapshot(
        session_id=session_id,
        source_id=source_id,
        template="t",
        priority=1,
        sequence_order=order,
        allocated=50,
        start_page=1,
        page_count=2,
        range_start=(order - 1) * 50,
        range_end=order * 50 - 1,
        status="pending",
    )


@pytest.mark.unit
def test_create_session_returns_existing_active_session_for_campaign() -> None:
    async def _run() -> None:
        repository = InMemoryDistributionRepository()
        first = await repository.create_session(session=_session("seq_a"))
        second = await repository.create_session(session=_session("seq_b"))

        assert second.session_id == first.session_id
        assert set(repository.sessions) == {"seq_a"}

        await repository.update_session_status(session_id="seq_a", status="completed")
        third = await repository.create_session(session=_session("seq_c"))
        assert third.session_id == "seq_c"

    asyncio.run(_run())


@pytest.mark.unit
def test_progress_update_enforces_accounting_invariant() -> None:
    async def _run() -> None:
        repository = InMemoryDistributionRepository()
        await repository.create_session(session=_session("seq_a"))

        await repository.update_session_progress(session_id="seq_a", offset=50, distributed=50, remaining=50, sequence=1)
        with pytest.raises(DomainInvariantError):
            await repository.update_session_progress(
                session_id="seq_a", offset=50, distributed=50, remaining=49, sequence=1
            )
        with pytest.raises(DomainInvariantError):
            await repository.update_session_progress(
                session_id="seq_a", offset=50, distributed=50, remaining=50, sequence=3
            )

    asyncio.run(_run())


@pytest.mark.unit
def test_claim_marks_first_pending_source_running_and_refuses_second_claim() -> None:
    async def _run() -> None:
        repository = InMemoryDistributionRepository()
        await repository.create_session(session=_session("seq_a"))
        await repository.create_source_states(
            session_id="seq_a",
            sources=[_source("seq_a", "u2", 2), _source("seq_a", "u1", 1)],
        )

        claimed = await repository.claim_next_pending_source(session_id="seq_a")
        assert claimed is not None
        assert claimed.source_id == "u1"
        assert claimed.status == "running"
        assert claimed.started_at is not None

        with pytest.raises(DomainInvariantError):
            await repository.claim_next_pending_source(session_id="seq_a")

        await repository.update_source_job_handle(session_id="seq_a", source_id="u1", job_handle="job-1")
        found = await repository.find_source_by_job_handle(job_handle="job-1")
        assert found is not None and found.source_id == "u1"
        assert [source.source_id for source in await repository.list_running_sources()] == ["u1"]

    asyncio.run(_run())


@pytest.mark.unit
def test_completed_source_is_never_downgraded() -> None:
    async def _run() -> None:
        repository = InMemoryDistributionRepository()
        await repository.create_session(session=_session("seq_a"))
        await repository.create_source_states(session_id="seq_a", sources=[_source("seq_a", "u1", 1)])
        await repository.claim_next_pending_source(session_id="seq_a")
        await repository.update_source_results(session_id="seq_a", source_id="u1", count=12, status="completed")

        with pytest.raises(DomainInvariantError):
            await repository.update_source_status(session_id="seq_a", source_id="u1", status="failed", reason="late")

        source = await repository.get_source_state(session_id="seq_a", source_id="u1")
        assert source is not None
        assert source.status == "completed"
        assert source.retrieved_count == 12
        assert source.executed_at is not None

    asyncio.run(_run())
