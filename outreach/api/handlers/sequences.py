from __future__ import annotations

from outreach.api.handlers.deps import ApiDeps
from outreach.api.schemas import (
    AdvanceResponse,
    LaunchOverridesInput,
    SequenceStatusResponse,
    SourceInput,
    SourceStateResponse,
    StartSequenceResponse,
)
from outreach.domain.models import AdvanceResult, LaunchOverrides, SourceSpec, SourceStateSnapshot, SourceStatus

COMPONENT_ID = "api.sequences"


def to_overrides(payload: LaunchOverridesInput | None) -> LaunchOverrides | None:
    if payload is None:
        return None
    return LaunchOverrides(
        result_count=payload.result_count,
        start_page=payload.start_page,
        page_count=payload.page_count,
        arguments=dict(payload.arguments),
    )


def source_response(source: SourceStateSnapshot) -> SourceStateResponse:
    return SourceStateResponse(
        source_id=source.source_id,
        template=source.template,
        priority=source.priority,
        sequence_order=source.sequence_order,
        allocated=source.allocated,
        status=source.status,
        start_page=source.start_page,
        page_count=source.page_count,
        range_start=source.range_start,
        range_end=source.range_end,
        job_handle=source.job_handle,
        retrieved_count=source.retrieved_count,
        failure_reason=source.failure_reason,
        started_at=source.started_at,
        executed_at=source.executed_at,
    )


def advance_response(result: AdvanceResult) -> AdvanceResponse:
    return AdvanceResponse(
        session_id=result.session_id,
        status=result.status.value,
        source_id=result.source_id,
        job_handle=result.job_handle,
        allocated=result.allocated,
        remaining=result.remaining,
    )


async def start_sequence_handler(
    *,
    campaign_id: str,
    sources: list[SourceInput],
    quota: int,
    execute_next: bool,
    overrides: LaunchOverridesInput | None,
    api_deps: ApiDeps,
) -> StartSequenceResponse:
    """Initializes or resumes the campaign session, optionally launching the next source."""
    started = await api_deps.sequencer.resume_or_start(
        campaign_id=campaign_id,
        sources=[
            SourceSpec(
                source_id=source.id,
                template=source.template,
                priority=source.priority,
                start_page=source.start_page,
                page_count=source.page_count,
                range_start=source.range_start,
                range_end=source.range_end,
            )
            for source in sources
        ],
        quota=quota,
    )
    execution = None
    if execute_next and started.next_source is not None:
        result = await api_deps.sequencer.advance(session_id=started.session_id, overrides=to_overrides(overrides))
        execution = advance_response(result)
    return StartSequenceResponse(
        session_id=started.session_id,
        status=started.status.value,
        next_source=source_response(started.next_source) if started.next_source is not None else None,
        execution=execution,
    )


async def advance_sequence_handler(
    *,
    session_id: str,
    overrides: LaunchOverridesInput | None,
    api_deps: ApiDeps,
) -> AdvanceResponse:
    result = await api_deps.sequencer.advance(session_id=session_id, overrides=to_overrides(overrides))
    return advance_response(result)


async def get_sequence_status_handler(*, session_id: str, api_deps: ApiDeps) -> SequenceStatusResponse:
    status = await api_deps.sequencer.get_sequence_status(session_id=session_id)
    session = status.session
    return SequenceStatusResponse(
        session_id=session.session_id,
        campaign_id=session.campaign_id,
        status=session.status,
        current_sequence=session.current_sequence,
        total_sources=session.total_sources,
        progress_percentage=status.progress_percentage,
        total_quota=session.total_quota,
        total_distributed=session.total_distributed,
        remaining=session.remaining,
        current_offset=session.current_offset,
        pending=status.count_by_status(SourceStatus.PENDING),
        running=status.count_by_status(SourceStatus.RUNNING),
        completed=status.count_by_status(SourceStatus.COMPLETED),
        failed=status.count_by_status(SourceStatus.FAILED),
        sources=[source_response(source) for source in status.sources],
        execution_history=session.execution_history,
        created_at=session.created_at,
        updated_at=session.updated_at,
        completed_at=session.completed_at,
    )
