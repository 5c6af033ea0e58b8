from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from outreach.api.handlers.deps import ApiDeps
from outreach.clients.runner import HttpJobRunnerClient
from outreach.clients.stub import StubJobRunnerClient
from outreach.domain.contracts import DistributionRepository, JobRunnerClient, KnownErrorRepository, MetricsCollector
from outreach.domain.retry import LaunchBackoffPolicy
from outreach.domain.use_cases.known_errors import KnownErrorClassifier
from outreach.domain.use_cases.recovery import RecoveryChain, RecoverySettings
from outreach.domain.use_cases.sequencer import ExecutionSequencer, SequencerSettings
from outreach.repositories.postgres import (
    AsyncpgPoolManager,
    PostgresDistributionRepository,
    PostgresKnownErrorRepository,
)
from outreach.repositories.stub import InMemoryDistributionRepository, InMemoryKnownErrorRepository
from outreach.roles import RuntimeRole
from outreach.services.metrics import InMemoryMetricsCollector
from outreach.services.settings import EngineSettings, engine_settings_from_env
from outreach.workers.loop import MonitorLoop


@dataclass
class RuntimeContainer:
    settings: EngineSettings
    repository: DistributionRepository
    known_errors: KnownErrorRepository
    runner: JobRunnerClient
    metrics: MetricsCollector
    sequencer: ExecutionSequencer
    api_deps: ApiDeps
    worker_loop: MonitorLoop | None
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    settings: EngineSettings | None = None,
    runner: JobRunnerClient | None = None,
) -> RuntimeContainer:
    settings = settings or engine_settings_from_env()
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    repository: DistributionRepository
    known_errors: KnownErrorRepository
    if settings.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        repository = PostgresDistributionRepository(pool_manager=pool_manager)
        known_errors = PostgresKnownErrorRepository(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
    else:
        repository = InMemoryDistributionRepository()
        known_errors = InMemoryKnownErrorRepository()

    if runner is None:
        if settings.uses_http_runner:
            runner = HttpJobRunnerClient(
                api_key=settings.runner_api_key or "",
                agent_id=settings.runner_agent_id or "",
                base_url=settings.runner_base_url,
                timeout_seconds=settings.runner_timeout_seconds,
            )
        else:
            runner = StubJobRunnerClient()

    metrics = InMemoryMetricsCollector()
    classifier = KnownErrorClassifier(repository=known_errors, metrics=metrics)
    recovery = RecoveryChain(
        repository=repository,
        runner=runner,
        classifier=classifier,
        metrics=metrics,
        settings=RecoverySettings(
            tier_timeout_seconds=settings.recovery_tier_timeout_seconds,
            archive_base_url=settings.runner_archive_base_url,
        ),
    )
    sequencer = ExecutionSequencer(
        repository=repository,
        runner=runner,
        recovery=recovery,
        metrics=metrics,
        launch_policy=LaunchBackoffPolicy(
            max_attempts=settings.launch_max_attempts,
            base_delay_ms=settings.launch_backoff_base_ms,
            max_delay_ms=settings.launch_backoff_max_ms,
        ),
        settings=SequencerSettings(
            max_job_lifetime_seconds=settings.max_job_lifetime_seconds,
            launch_grace_seconds=settings.launch_grace_seconds,
        ),
    )
    api_deps = ApiDeps(
        repository=repository,
        runner=runner,
        sequencer=sequencer,
        recovery=recovery,
        classifier=classifier,
        metrics=metrics,
    )

    worker_loop: MonitorLoop | None = None
    if role.runs_worker_loop:
        worker_loop = MonitorLoop(role=role.name, repository=repository, sequencer=sequencer)

    return RuntimeContainer(
        settings=settings,
        repository=repository,
        known_errors=known_errors,
        runner=runner,
        metrics=metrics,
        sequencer=sequencer,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
