from __future__ import annotations

from typing import Protocol, runtime_checkable

from outreach.domain.models import (
    DownloadedDocument,
    JobStatus,
    KnownErrorRecord,
    KnownErrorStatistics,
    LaunchRequest,
    SessionSnapshot,
    SourceStateSnapshot,
)

ACTIVE_SESSION_SQL_CONTRACT = "UNIQUE (campaign_id) WHERE status = 'active'"


@runtime_checkable
class DistributionRepository(Protocol):
    """Persistence contract for sessions and per-source state.

    Writes are upserts keyed by session id and (session id, source id), so a
    repeated call with the same payload is idempotent. A campaign has at most
    one active session: create_session returns the already-active session when
    one exists instead of inserting a second.
    """

    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot: ...

    async def get_active_session_by_campaign(self, *, campaign_id: str) -> SessionSnapshot | None: ...

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None: ...

    async def update_session_status(self, *, session_id: str, status: str) -> None: ...

    async def update_session_progress(
        self,
        *,
        session_id: str,
        offset: int,
        distributed: int,
        remaining: int,
        sequence: int,
    ) -> None: ...

    async def create_source_states(self, *, session_id: str, sources: list[SourceStateSnapshot]) -> None: ...

    async def list_source_states(self, *, session_id: str) -> list[SourceStateSnapshot]: ...

    async def get_source_state(self, *, session_id: str, source_id: str) -> SourceStateSnapshot | None: ...

    async def update_source_status(
        self,
        *,
        session_id: str,
        source_id: str,
        status: str,
        reason: str | None = None,
    ) -> None: ...

    async def update_source_job_handle(self, *, session_id: str, source_id: str, job_handle: str) -> None: ...

    async def update_source_results(self, *, session_id: str, source_id: str, count: int, status: str) -> None: ...

    async def append_execution_history(self, *, session_id: str, entry: dict[str, object]) -> None: ...

    async def claim_next_pending_source(self, *, session_id: str) -> SourceStateSnapshot | None: ...

    async def list_running_sources(self) -> list[SourceStateSnapshot]: ...

    async def find_source_by_job_handle(self, *, job_handle: str) -> SourceStateSnapshot | None: ...

    async def record_job_completion(
        self,
        *,
        job_handle: str,
        session_id: str | None,
        source_id: str | None,
        results_count: int,
        status: str,
    ) -> None: ...


@runtime_checkable
class KnownErrorRepository(Protocol):
    async def save_known_error(self, *, record: KnownErrorRecord) -> KnownErrorRecord: ...

    async def get_known_error(self, *, job_handle: str) -> KnownErrorRecord | None: ...

    async def list_known_errors(
        self,
        *,
        category: str | None = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> list[KnownErrorRecord]: ...

    async def mark_resolved(self, *, job_handle: str, notes: str) -> KnownErrorRecord | None: ...

    async def error_statistics(self) -> list[KnownErrorStatistics]: ...


@runtime_checkable
class JobRunnerClient(Protocol):
    """Remote job runner. Implementations never retry on their own."""

    async def launch(self, request: LaunchRequest) -> str: ...

    async def get_job_status(self, job_handle: str) -> JobStatus: ...

    async def fetch_structured_result(self, job_handle: str) -> object: ...

    async def fetch_output(self, job_handle: str) -> object: ...

    async def download(self, url: str) -> DownloadedDocument: ...

    async def stop(self, job_handle: str) -> bool: ...


@runtime_checkable
class MetricsCollector(Protocol):
    def increment(self, name: str, value: int = 1, **labels: str) -> None: ...

    def observe(self, name: str, value: float, **labels: str) -> None: ...

    def snapshot(self) -> dict[str, object]: ...
