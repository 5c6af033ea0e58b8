from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import importlib
import json
from typing import Any

from outreach.domain.errors import (
    DomainInvariantError,
    SessionNotFoundError,
    SourceNotFoundError,
    StoreError,
)
from outreach.domain.lifecycle import ensure_session_transition, ensure_source_transition
from outreach.domain.models import (
    KnownErrorRecord,
    KnownErrorStatistics,
    SessionSnapshot,
    SourceStateSnapshot,
    SourceStatus,
)
from outreach.repositories.sql_loader import load_sql

asyncpg_module = importlib.import_module("asyncpg")


SQL_CREATE_SESSION = load_sql("create_session.sql")
SQL_GET_ACTIVE_SESSION_BY_CAMPAIGN = load_sql("get_active_session_by_campaign.sql")
SQL_GET_SESSION = load_sql("get_session.sql")
SQL_LOCK_SESSION = load_sql("lock_session.sql")
SQL_UPDATE_SESSION_STATUS = load_sql("update_session_status.sql")
SQL_UPDATE_SESSION_PROGRESS = load_sql("update_session_progress.sql")
SQL_APPEND_EXECUTION_HISTORY = load_sql("append_execution_history.sql")
SQL_CREATE_SOURCE_STATE = load_sql("create_source_state.sql")
SQL_LIST_SOURCE_STATES = load_sql("list_source_states.sql")
SQL_GET_SOURCE_STATE = load_sql("get_source_state.sql")
SQL_LOCK_SOURCE_STATE = load_sql("lock_source_state.sql")
SQL_UPDATE_SOURCE_STATUS = load_sql("update_source_status.sql")
SQL_UPDATE_SOURCE_JOB_HANDLE = load_sql("update_source_job_handle.sql")
SQL_UPDATE_SOURCE_RESULTS = load_sql("update_source_results.sql")
SQL_COUNT_RUNNING_SOURCES = load_sql("count_running_sources.sql")
SQL_CLAIM_NEXT_PENDING_SOURCE = load_sql("claim_next_pending_source.sql")
SQL_LIST_RUNNING_SOURCES = load_sql("list_running_sources.sql")
SQL_FIND_SOURCE_BY_JOB_HANDLE = load_sql("find_source_by_job_handle.sql")
SQL_RECORD_JOB_COMPLETION = load_sql("record_job_completion.sql")
SQL_UPSERT_KNOWN_ERROR = load_sql("upsert_known_error.sql")
SQL_GET_KNOWN_ERROR = load_sql("get_known_error.sql")
SQL_LIST_KNOWN_ERRORS = load_sql("list_known_errors.sql")
SQL_MARK_KNOWN_ERROR_RESOLVED = load_sql("mark_known_error_resolved.sql")
SQL_KNOWN_ERROR_STATISTICS = load_sql("known_error_statistics.sql")


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 5

    async def startup(self) -> None:
        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        try:
            self.pool = await asyncpg_module.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                init=_init_connection,
            )
        except (asyncpg_module.PostgresError, OSError) as exc:
            raise StoreError(f"cannot connect to postgres: {exc}") from exc

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class _PostgresBase:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise StoreError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self, *, transaction: bool = False) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                if transaction:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except (asyncpg_module.PostgresError, asyncpg_module.InterfaceError, OSError) as exc:
            raise StoreError(f"postgres operation failed: {exc}") from exc


@dataclass
class PostgresDistributionRepository(_PostgresBase):
    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    SQL_CREATE_SESSION,
                    session.session_id,
                    session.campaign_id,
                    session.total_quota,
                    session.current_offset,
                    session.total_distributed,
                    session.remaining,
                    session.current_sequence,
                    session.total_sources,
                    session.sources_config,
                    session.execution_history,
                    session.status,
                )
            except Exception as exc:
                if not _is_unique_violation(exc):
                    raise
                # The campaign already has an active session; hand that one back.
                row = await conn.fetchrow(SQL_GET_ACTIVE_SESSION_BY_CAMPAIGN, session.campaign_id)
            if row is None:
                raise DomainInvariantError("failed to create distribution session")
            return _session_from_row(row)

    async def get_active_session_by_campaign(self, *, campaign_id: str) -> SessionSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_ACTIVE_SESSION_BY_CAMPAIGN, campaign_id)
        return _session_from_row(row) if row is not None else None

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_SESSION, session_id)
        return _session_from_row(row) if row is not None else None

    async def update_session_status(self, *, session_id: str, status: str) -> None:
        async with self._connection(transaction=True) as conn:
            current = await conn.fetchrow(SQL_LOCK_SESSION, session_id)
            if current is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            ensure_session_transition(session_id=session_id, from_status=current["status"], to_status=status)
            await conn.execute(SQL_UPDATE_SESSION_STATUS, session_id, status)

    async def update_session_progress(
        self,
        *,
        session_id: str,
        offset: int,
        distributed: int,
        remaining: int,
        sequence: int,
    ) -> None:
        async with self._connection() as conn:
            try:
                updated = await conn.fetchval(
                    SQL_UPDATE_SESSION_PROGRESS,
                    session_id,
                    offset,
                    distributed,
                    remaining,
                    sequence,
                )
            except asyncpg_module.CheckViolationError as exc:
                raise DomainInvariantError(f"session accounting rejected: {exc}") from exc
        if updated is None:
            raise SessionNotFoundError(f"session {session_id} not found")

    async def create_source_states(self, *, session_id: str, sources: list[SourceStateSnapshot]) -> None:
        async with self._connection(transaction=True) as conn:
            await conn.executemany(
                SQL_CREATE_SOURCE_STATE,
                [
                    (
                        session_id,
                        source.source_id,
                        source.template,
                        float(source.priority),
                        source.sequence_order,
                        source.allocated,
                        source.start_page,
                        source.page_count,
                        source.range_start,
                        source.range_end,
                        source.status,
                    )
                    for source in sources
                ],
            )

    async def list_source_states(self, *, session_id: str) -> list[SourceStateSnapshot]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_SOURCE_STATES, session_id)
        return [_source_from_row(row) for row in rows]

    async def get_source_state(self, *, session_id: str, source_id: str) -> SourceStateSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_SOURCE_STATE, session_id, source_id)
        return _source_from_row(row) if row is not None else None

    async def update_source_status(
        self,
        *,
        session_id: str,
        source_id: str,
        status: str,
        reason: str | None = None,
    ) -> None:
        async with self._connection(transaction=True) as conn:
            current = await conn.fetchval(SQL_LOCK_SOURCE_STATE, session_id, source_id)
            if current is None:
                raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")
            ensure_source_transition(source_id=source_id, from_status=current, to_status=status)
            await conn.execute(SQL_UPDATE_SOURCE_STATUS, session_id, source_id, status, reason)

    async def update_source_job_handle(self, *, session_id: str, source_id: str, job_handle: str) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(SQL_UPDATE_SOURCE_JOB_HANDLE, session_id, source_id, job_handle)
        if updated is None:
            raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")

    async def update_source_results(self, *, session_id: str, source_id: str, count: int, status: str) -> None:
        async with self._connection(transaction=True) as conn:
            current = await conn.fetchval(SQL_LOCK_SOURCE_STATE, session_id, source_id)
            if current is None:
                raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")
            ensure_source_transition(source_id=source_id, from_status=current, to_status=status)
            await conn.execute(SQL_UPDATE_SOURCE_RESULTS, session_id, source_id, count, status)

    async def append_execution_history(self, *, session_id: str, entry: dict[str, object]) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(SQL_APPEND_EXECUTION_HISTORY, session_id, entry)
        if updated is None:
            raise SessionNotFoundError(f"session {session_id} not found")

    async def claim_next_pending_source(self, *, session_id: str) -> SourceStateSnapshot | None:
        # The session row lock serializes claims across processes.
        async with self._connection(transaction=True) as conn:
            locked = await conn.fetchrow(SQL_LOCK_SESSION, session_id)
            if locked is None:
                raise SessionNotFoundError(f"session {session_id} not found")
            running = await conn.fetchval(SQL_COUNT_RUNNING_SOURCES, session_id)
            if running:
                raise DomainInvariantError(f"session {session_id} already has a running source")
            row = await conn.fetchrow(SQL_CLAIM_NEXT_PENDING_SOURCE, session_id)
        return _source_from_row(row) if row is not None else None

    async def list_running_sources(self) -> list[SourceStateSnapshot]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_RUNNING_SOURCES)
        return [_source_from_row(row) for row in rows]

    async def find_source_by_job_handle(self, *, job_handle: str) -> SourceStateSnapshot | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_FIND_SOURCE_BY_JOB_HANDLE, job_handle)
        return _source_from_row(row) if row is not None else None

    async def record_job_completion(
        self,
        *,
        job_handle: str,
        session_id: str | None,
        source_id: str | None,
        results_count: int,
        status: str,
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(SQL_RECORD_JOB_COMPLETION, job_handle, session_id, source_id, results_count, status)


@dataclass
class PostgresKnownErrorRepository(_PostgresBase):
    async def save_known_error(self, *, record: KnownErrorRecord) -> KnownErrorRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                SQL_UPSERT_KNOWN_ERROR,
                record.job_handle,
                record.category,
                record.message,
                record.details,
                record.exit_code,
                record.end_type,
                record.duration_ms,
                record.session_id,
                record.source_id,
            )
        if row is None:
            raise DomainInvariantError("failed to save known error")
        return _known_error_from_row(row)

    async def get_known_error(self, *, job_handle: str) -> KnownErrorRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_KNOWN_ERROR, job_handle)
        return _known_error_from_row(row) if row is not None else None

    async def list_known_errors(
        self,
        *,
        category: str | None = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> list[KnownErrorRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_LIST_KNOWN_ERRORS, category, include_resolved, limit)
        return [_known_error_from_row(row) for row in rows]

    async def mark_resolved(self, *, job_handle: str, notes: str) -> KnownErrorRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_MARK_KNOWN_ERROR_RESOLVED, job_handle, notes)
        return _known_error_from_row(row) if row is not None else None

    async def error_statistics(self) -> list[KnownErrorStatistics]:
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_KNOWN_ERROR_STATISTICS)
        return [
            KnownErrorStatistics(
                category=row["category"],
                total=int(row["total"]),
                resolved=int(row["resolved"]),
                unresolved=int(row["unresolved"]),
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
            )
            for row in rows
        ]


def _session_from_row(row: Any) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=row["session_id"],
        campaign_id=row["campaign_id"],
        total_quota=row["total_quota"],
        current_offset=row["current_offset"],
        total_distributed=row["total_distributed"],
        remaining=row["remaining"],
        current_sequence=row["current_sequence"],
        total_sources=row["total_sources"],
        sources_config=_json_list(row["sources_config"]),
        execution_history=_json_list(row["execution_history"]),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _source_from_row(row: Any) -> SourceStateSnapshot:
    return SourceStateSnapshot(
        session_id=row["session_id"],
        source_id=row["source_id"],
        template=row["template"],
        priority=row["priority"],
        sequence_order=row["sequence_order"],
        allocated=row["allocated"],
        start_page=row["start_page"],
        page_count=row["page_count"],
        range_start=row["range_start"],
        range_end=row["range_end"],
        status=SourceStatus(row["status"]),
        job_handle=row["job_handle"],
        retrieved_count=row["retrieved_count"],
        failure_reason=row["failure_reason"],
        started_at=row["started_at"],
        executed_at=row["executed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _known_error_from_row(row: Any) -> KnownErrorRecord:
    details = row["details"]
    return KnownErrorRecord(
        job_handle=row["job_handle"],
        category=row["category"],
        message=row["message"],
        details=details if isinstance(details, dict) else {},
        exit_code=row["exit_code"],
        end_type=row["end_type"],
        duration_ms=row["duration_ms"],
        session_id=row["session_id"],
        source_id=row["source_id"],
        is_resolved=row["is_resolved"],
        resolution_notes=row["resolution_notes"],
        occurrences=row["occurrences"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        resolved_at=row["resolved_at"],
    )


def _json_list(value: object) -> list[dict[str, object]]:
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]
