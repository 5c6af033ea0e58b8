from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SESSION_ID_PATTERN = r"^seq_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    settled_ticks_total: int
    idle_ticks_total: int
    errors_total: int
    sources_settled_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class SourceInput(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    template: str = Field(min_length=1)
    priority: float = 1
    start_page: int | None = None
    page_count: int | None = None
    range_start: int | None = None
    range_end: int | None = None


class LaunchOverridesInput(BaseModel):
    result_count: int | None = Field(default=None, ge=1)
    start_page: int | None = Field(default=None, ge=1)
    page_count: int | None = Field(default=None, ge=1)
    arguments: dict[str, object] = Field(default_factory=dict)


class StartSequenceRequest(BaseModel):
    campaign_id: str = Field(min_length=1, max_length=128)
    sources: list[SourceInput]
    quota: int
    execute_next: bool = False
    overrides: LaunchOverridesInput | None = None


class AdvanceRequest(BaseModel):
    overrides: LaunchOverridesInput | None = None


class SourceStateResponse(BaseModel):
    source_id: str
    template: str
    priority: float
    sequence_order: int
    allocated: int
    status: str
    start_page: int | None = None
    page_count: int | None = None
    range_start: int | None = None
    range_end: int | None = None
    job_handle: str | None = None
    retrieved_count: int = 0
    failure_reason: str | None = None
    started_at: datetime | None = None
    executed_at: datetime | None = None


class AdvanceResponse(BaseModel):
    session_id: str
    status: Literal["launched", "completed"]
    source_id: str | None = None
    job_handle: str | None = None
    allocated: int = 0
    remaining: int = 0


class StartSequenceResponse(BaseModel):
    session_id: str = Field(pattern=SESSION_ID_PATTERN)
    status: Literal["new", "resumed", "completed"]
    next_source: SourceStateResponse | None = None
    execution: AdvanceResponse | None = None


class SequenceStatusResponse(BaseModel):
    session_id: str
    campaign_id: str
    status: str
    current_sequence: int
    total_sources: int
    progress_percentage: float
    total_quota: int
    total_distributed: int
    remaining: int
    current_offset: int
    pending: int
    running: int
    completed: int
    failed: int
    sources: list[SourceStateResponse]
    execution_history: list[dict[str, object]]
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class RecoverRequest(BaseModel):
    job_handle: str | None = Field(default=None, min_length=1, max_length=128)


class RecoveryResponse(BaseModel):
    job_handle: str
    status: str
    count: int
    records: list[dict[str, object]]
    tier: str | None = None
    category: str | None = None
    message: str
    session_id: str | None = None
    source_id: str | None = None


class KnownErrorResponse(BaseModel):
    job_handle: str
    category: str
    message: str
    details: dict[str, object]
    exit_code: int | None = None
    end_type: str | None = None
    duration_ms: int | None = None
    session_id: str | None = None
    source_id: str | None = None
    is_resolved: bool
    resolution_notes: str | None = None
    occurrences: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


class KnownErrorListResponse(BaseModel):
    items: list[KnownErrorResponse]


class KnownErrorStatisticsItem(BaseModel):
    category: str
    total: int
    resolved: int
    unresolved: int
    first_seen: datetime | None = None
    last_seen: datetime | None = None


class KnownErrorStatisticsResponse(BaseModel):
    items: list[KnownErrorStatisticsItem]


class ResolveKnownErrorRequest(BaseModel):
    notes: str = Field(min_length=1, max_length=2000)


class CategoriesResponse(BaseModel):
    categories: list[str]


class RecommendationResponse(BaseModel):
    category: str
    title: str
    description: str
    actions: list[str]


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    summaries: dict[str, dict[str, float]]
