from __future__ import annotations

from outreach.api.handlers.deps import ApiDeps
from outreach.api.schemas import RecoveryResponse
from outreach.domain.models import RecoveryResult

COMPONENT_ID = "api.recovery"


def recovery_response(result: RecoveryResult) -> RecoveryResponse:
    return RecoveryResponse(
        job_handle=result.job_handle,
        status=result.status.value,
        count=result.count,
        records=result.records,
        tier=result.tier,
        category=result.category,
        message=result.message,
        session_id=result.session_id,
        source_id=result.source_id,
    )


async def recover_source_handler(
    *,
    session_id: str,
    source_id: str,
    job_handle: str | None,
    api_deps: ApiDeps,
) -> RecoveryResponse:
    result = await api_deps.sequencer.recover_results(
        session_id=session_id,
        source_id=source_id,
        job_handle=job_handle,
    )
    return recovery_response(result)


async def recover_job_handler(*, job_handle: str, api_deps: ApiDeps) -> RecoveryResponse:
    """Recovers a job by handle; routes through the owning session when the handle is tracked."""
    source = await api_deps.repository.find_source_by_job_handle(job_handle=job_handle)
    if source is not None:
        return await recover_source_handler(
            session_id=source.session_id,
            source_id=source.source_id,
            job_handle=job_handle,
            api_deps=api_deps,
        )
    result = await api_deps.recovery.recover(job_handle=job_handle)
    return recovery_response(result)
