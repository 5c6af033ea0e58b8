from __future__ import annotations

from dataclasses import dataclass

from outreach.domain.contracts import DistributionRepository, JobRunnerClient, MetricsCollector
from outreach.domain.use_cases.known_errors import KnownErrorClassifier
from outreach.domain.use_cases.recovery import RecoveryChain
from outreach.domain.use_cases.sequencer import ExecutionSequencer


@dataclass(frozen=True)
class ApiDeps:
    repository: DistributionRepository
    runner: JobRunnerClient
    sequencer: ExecutionSequencer
    recovery: RecoveryChain
    classifier: KnownErrorClassifier
    metrics: MetricsCollector
