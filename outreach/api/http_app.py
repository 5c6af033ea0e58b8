from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import Body, FastAPI, HTTPException, Path, Query

from outreach.api.handlers.deps import ApiDeps
from outreach.api.handlers.known_errors import (
    categories_handler,
    known_error_statistics_handler,
    list_known_errors_handler,
    recommendation_handler,
    resolve_known_error_handler,
)
from outreach.api.handlers.recovery import recover_job_handler, recover_source_handler
from outreach.api.handlers.sequences import (
    advance_sequence_handler,
    get_sequence_status_handler,
    start_sequence_handler,
)
from outreach.api.schemas import (
    SESSION_ID_PATTERN,
    AdvanceRequest,
    AdvanceResponse,
    CategoriesResponse,
    ErrorResponse,
    HealthResponse,
    KnownErrorListResponse,
    KnownErrorResponse,
    KnownErrorStatisticsResponse,
    MetricsResponse,
    ReadyResponse,
    RecommendationResponse,
    RecoverRequest,
    RecoveryResponse,
    ResolveKnownErrorRequest,
    SequenceStatusResponse,
    StartSequenceRequest,
    StartSequenceResponse,
    WorkerMetrics,
)
from outreach.domain.errors import (
    DomainDependencyError,
    DomainError,
    DomainInvariantError,
    DomainValidationError,
    SessionNotFoundError,
    SourceNotFoundError,
    StoreError,
)
from outreach.domain.models import RecoveryStatus
from outreach.workers.loop import MonitorLoop
from outreach.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_monitor_until_stopped,
    worker_runtime_settings_from_env,
)

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def http_error(exc: DomainError) -> HTTPException:
    """Maps a domain error to the HTTP status callers act on."""
    if isinstance(exc, (SessionNotFoundError, SourceNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DomainValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DomainInvariantError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, DomainDependencyError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def exhausted_error(result: RecoveryResponse) -> HTTPException:
    context = ", ".join(
        f"{key}={value}"
        for key, value in (
            ("job_handle", result.job_handle),
            ("category", result.category),
            ("session_id", result.session_id),
            ("source_id", result.source_id),
        )
        if value is not None
    )
    return HTTPException(status_code=404, detail=f"recovery exhausted: {result.message} ({context})")


def build_app(
    role: str,
    run_id: str,
    worker_loop: MonitorLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_monitor_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="outreach-sequencer", version="0.1.0", lifespan=lifespan)

    def require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode="engine")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        metrics = WorkerMetrics.model_validate(asdict(WorkerRuntimeState()))
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics.model_validate(asdict(worker_state))

        return ReadyResponse(
            status="ready",
            role=role,
            mode="engine",
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    @app.post("/sequences", response_model=StartSequenceResponse, responses=ERROR_RESPONSES, tags=["Sequences"])
    async def start_sequence(request: StartSequenceRequest) -> StartSequenceResponse:
        deps = require_deps()
        try:
            return await start_sequence_handler(
                campaign_id=request.campaign_id,
                sources=request.sources,
                quota=request.quota,
                execute_next=request.execute_next,
                overrides=request.overrides,
                api_deps=deps,
            )
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/sequences/{session_id}/next",
        response_model=AdvanceResponse,
        responses=ERROR_RESPONSES,
        tags=["Sequences"],
    )
    async def advance_sequence(
        session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
        request: AdvanceRequest | None = Body(default=None),
    ) -> AdvanceResponse:
        deps = require_deps()
        try:
            return await advance_sequence_handler(
                session_id=session_id,
                overrides=request.overrides if request is not None else None,
                api_deps=deps,
            )
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.get(
        "/sequences/{session_id}",
        response_model=SequenceStatusResponse,
        responses=ERROR_RESPONSES,
        tags=["Sequences"],
    )
    async def get_sequence_status(session_id: str = Path(..., pattern=SESSION_ID_PATTERN)) -> SequenceStatusResponse:
        deps = require_deps()
        try:
            return await get_sequence_status_handler(session_id=session_id, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/sequences/{session_id}/sources/{source_id}/recover",
        response_model=RecoveryResponse,
        responses=ERROR_RESPONSES,
        tags=["Recovery"],
    )
    async def recover_source(
        session_id: str = Path(..., pattern=SESSION_ID_PATTERN),
        source_id: str = Path(..., min_length=1, max_length=128),
        request: RecoverRequest | None = Body(default=None),
    ) -> RecoveryResponse:
        deps = require_deps()
        try:
            result = await recover_source_handler(
                session_id=session_id,
                source_id=source_id,
                job_handle=request.job_handle if request is not None else None,
                api_deps=deps,
            )
        except DomainError as exc:
            raise http_error(exc) from exc
        if result.status == RecoveryStatus.EXHAUSTED:
            raise exhausted_error(result)
        return result

    @app.post("/jobs/{job_handle}/recover", response_model=RecoveryResponse, responses=ERROR_RESPONSES, tags=["Recovery"])
    async def recover_job(job_handle: str = Path(..., min_length=1, max_length=128)) -> RecoveryResponse:
        deps = require_deps()
        try:
            result = await recover_job_handler(job_handle=job_handle, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc
        if result.status == RecoveryStatus.EXHAUSTED:
            raise exhausted_error(result)
        return result

    @app.get("/known-errors", response_model=KnownErrorListResponse, responses=ERROR_RESPONSES, tags=["Known errors"])
    async def list_known_errors(
        category: str | None = Query(default=None),
        include_resolved: bool = Query(default=False),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> KnownErrorListResponse:
        deps = require_deps()
        try:
            return await list_known_errors_handler(
                category=category,
                include_resolved=include_resolved,
                limit=limit,
                api_deps=deps,
            )
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.get("/known-errors/statistics", response_model=KnownErrorStatisticsResponse, tags=["Known errors"])
    async def known_error_statistics() -> KnownErrorStatisticsResponse:
        deps = require_deps()
        try:
            return await known_error_statistics_handler(api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.get("/known-errors/categories", response_model=CategoriesResponse, tags=["Known errors"])
    async def known_error_categories() -> CategoriesResponse:
        return categories_handler(api_deps=require_deps())

    @app.get(
        "/known-errors/recommendations/{category}",
        response_model=RecommendationResponse,
        responses=ERROR_RESPONSES,
        tags=["Known errors"],
    )
    async def known_error_recommendation(category: str) -> RecommendationResponse:
        deps = require_deps()
        try:
            return recommendation_handler(category=category, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc

    @app.post(
        "/known-errors/{job_handle}/resolve",
        response_model=KnownErrorResponse,
        responses=ERROR_RESPONSES,
        tags=["Known errors"],
    )
    async def resolve_known_error(job_handle: str, request: ResolveKnownErrorRequest) -> KnownErrorResponse:
        deps = require_deps()
        try:
            record = await resolve_known_error_handler(job_handle=job_handle, notes=request.notes, api_deps=deps)
        except DomainError as exc:
            raise http_error(exc) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="known error not found")
        return record

    @app.get("/metrics", response_model=MetricsResponse, tags=["System"])
    async def metrics() -> MetricsResponse:
        snapshot = require_deps().metrics.snapshot()
        return MetricsResponse(
            counters=snapshot.get("counters", {}),  # type: ignore[arg-type]
            summaries=snapshot.get("summaries", {}),  # type: ignore[arg-type]
        )

    return app
