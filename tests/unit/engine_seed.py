from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from outreach.clients.stub import StubJobRunnerClient
from outreach.domain.models import SourceSpec
from outreach.domain.retry import LaunchBackoffPolicy
from outreach.domain.use_cases.known_errors import KnownErrorClassifier
from outreach.domain.use_cases.recovery import RecoveryChain, RecoverySettings
from outreach.domain.use_cases.sequencer import ExecutionSequencer, SequencerSettings
from outreach.repositories.stub import InMemoryDistributionRepository, InMemoryKnownErrorRepository
from outreach.services.metrics import InMemoryMetricsCollector


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class Engine:
    repository: InMemoryDistributionRepository
    known_errors: InMemoryKnownErrorRepository
    runner: StubJobRunnerClient
    metrics: InMemoryMetricsCollector
    classifier: KnownErrorClassifier
    recovery: RecoveryChain
    sequencer: ExecutionSequencer


def build_engine(
    *,
    runner: StubJobRunnerClient | None = None,
    archive_base_url: str | None = None,
    tier_timeout_seconds: float = 5.0,
    launch_policy: LaunchBackoffPolicy | None = None,
    settings: SequencerSettings | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Engine:
    clock = clock or utc_now
    repository = InMemoryDistributionRepository()
    known_errors = InMemoryKnownErrorRepository()
    runner = runner or StubJobRunnerClient()
    metrics = InMemoryMetricsCollector()
    classifier = KnownErrorClassifier(repository=known_errors, metrics=metrics)
    recovery = RecoveryChain(
        repository=repository,
        runner=runner,
        classifier=classifier,
        metrics=metrics,
        settings=RecoverySettings(tier_timeout_seconds=tier_timeout_seconds, archive_base_url=archive_base_url),
        clock=clock,
    )
    sequencer = ExecutionSequencer(
        repository=repository,
        runner=runner,
        recovery=recovery,
        metrics=metrics,
        launch_policy=launch_policy or LaunchBackoffPolicy.no_retry(),
        settings=settings or SequencerSettings(),
        clock=clock,
    )
    return Engine(
        repository=repository,
        known_errors=known_errors,
        runner=runner,
        metrics=metrics,
        classifier=classifier,
        recovery=recovery,
        sequencer=sequencer,
    )


def three_sources() -> list[SourceSpec]:
    return [
        SourceSpec(source_id="u1", template="https://search.example/u1", priority=1),
        SourceSpec(source_id="u2", template="https://search.example/u2", priority=2),
        SourceSpec(source_id="u3", template="https://search.example/u3", priority=3),
    ]


def profile(index: int) -> dict[str, object]:
    return {
        "profileUrl": f"https://profiles.example/p{index}",
        "fullName": f"Person {index}",
        "company": f"Company {index}",
        "connectionDegree": "3+",
    }
