from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

RESULTS_PER_PAGE = 25


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


class SourceStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StartStatus(StrEnum):
    NEW = "new"
    RESUMED = "resumed"
    COMPLETED = "completed"


class AdvanceStatus(StrEnum):
    LAUNCHED = "launched"
    COMPLETED = "completed"


class JobState(StrEnum):
    RUNNING = "running"
    FINISHED = "finished"
    UNKNOWN = "unknown"


class RecoveryStatus(StrEnum):
    RECOVERED = "recovered"
    ALREADY_RETRIEVED = "already_retrieved"
    NO_RESULTS = "no_results"
    FAILED = "failed"
    JOB_RUNNING = "job_running"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SourceSpec:
    """Caller description of one target; page hints switch the planner to pass-through."""

    source_id: str
    template: str
    priority: float = 1
    start_page: int | None = None
    page_count: int | None = None
    range_start: int | None = None
    range_end: int | None = None

    @property
    def has_pagination_hints(self) -> bool:
        return self.start_page is not None and self.page_count is not None


@dataclass(frozen=True)
class PlannedSource:
    source_id: str
    template: str
    priority: float
    allocated: int
    sequence_order: int
    start_page: int
    page_count: int
    range_start: int
    range_end: int


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    campaign_id: str
    total_quota: int
    current_offset: int
    total_distributed: int
    remaining: int
    current_sequence: int
    total_sources: int
    sources_config: list[dict[str, object]]
    execution_history: list[dict[str, object]]
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class SourceStateSnapshot:
    session_id: str
    source_id: str
    template: str
    priority: float
    sequence_order: int
    allocated: int
    start_page: int | None
    page_count: int | None
    range_start: int | None
    range_end: int | None
    status: str
    job_handle: str | None = None
    retrieved_count: int = 0
    failure_reason: str | None = None
    started_at: datetime | None = None
    executed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class KnownErrorRecord:
    job_handle: str
    category: str
    message: str
    details: dict[str, object] = field(default_factory=dict)
    exit_code: int | None = None
    end_type: str | None = None
    duration_ms: int | None = None
    session_id: str | None = None
    source_id: str | None = None
    is_resolved: bool = False
    resolution_notes: str | None = None
    occurrences: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True)
class KnownErrorStatistics:
    category: str
    total: int
    resolved: int
    unresolved: int
    first_seen: datetime | None
    last_seen: datetime | None


@dataclass(frozen=True)
class Classification:
    category: str
    message: str
    details: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class JobStatus:
    state: str
    output: str = ""
    message: str | None = None
    exit_code: int | None = None
    end_type: str | None = None
    duration_ms: int | None = None
    raw: dict[str, object] = field(default_factory=dict)

    def text(self) -> str:
        return " ".join(part for part in (self.message, self.output) if part)


@dataclass(frozen=True)
class DownloadedDocument:
    url: str
    text: str
    content_type: str | None = None


@dataclass(frozen=True)
class LaunchRequest:
    source_id: str
    template: str
    result_count: int
    start_page: int | None
    page_count: int | None
    arguments: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class LaunchOverrides:
    """Caller-supplied launch values; anything left as None keeps the planned value."""

    result_count: int | None = None
    start_page: int | None = None
    page_count: int | None = None
    arguments: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class StartResult:
    session_id: str
    status: StartStatus
    next_source: SourceStateSnapshot | None


@dataclass(frozen=True)
class AdvanceResult:
    session_id: str
    status: AdvanceStatus
    source_id: str | None = None
    job_handle: str | None = None
    allocated: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class RecoveryResult:
    job_handle: str
    status: RecoveryStatus
    records: list[dict[str, object]] = field(default_factory=list)
    tier: str | None = None
    category: str | None = None
    message: str = ""
    session_id: str | None = None
    source_id: str | None = None

    @property
    def count(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class SequenceStatus:
    session: SessionSnapshot
    sources: list[SourceStateSnapshot]

    @property
    def progress_percentage(self) -> float:
        if self.session.total_sources == 0:
            return 100.0
        return round(self.session.current_sequence / self.session.total_sources * 100, 2)

    def count_by_status(self, status: str) -> int:
        return sum(1 for source in self.sources if source.status == status)
