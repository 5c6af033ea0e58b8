from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from outreach.domain.errors import DomainInvariantError, SessionNotFoundError, SourceNotFoundError
from outreach.domain.lifecycle import ensure_session_transition, ensure_source_transition
from outreach.domain.models import (
    KnownErrorRecord,
    KnownErrorStatistics,
    SessionSnapshot,
    SessionStatus,
    SourceStateSnapshot,
    SourceStatus,
)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class InMemoryDistributionRepository:
    """Non-network session store with the same upsert semantics as Postgres."""

    sessions: dict[str, SessionSnapshot] = field(default_factory=dict)
    sources: dict[tuple[str, str], SourceStateSnapshot] = field(default_factory=dict)
    completions: dict[str, dict[str, object]] = field(default_factory=dict)

    async def create_session(self, *, session: SessionSnapshot) -> SessionSnapshot:
        active = await self.get_active_session_by_campaign(campaign_id=session.campaign_id)
        if active is not None and active.session_id != session.session_id:
            return active
        now = _utcnow()
        stored = replace(
            session,
            sources_config=[dict(item) for item in session.sources_config],
            execution_history=list(session.execution_history),
            created_at=session.created_at or now,
            updated_at=now,
        )
        self.sessions[session.session_id] = stored
        return stored

    async def get_active_session_by_campaign(self, *, campaign_id: str) -> SessionSnapshot | None:
        for session in self.sessions.values():
            if session.campaign_id == campaign_id and session.status == SessionStatus.ACTIVE:
                return session
        return None

    async def get_session(self, *, session_id: str) -> SessionSnapshot | None:
        return self.sessions.get(session_id)

    async def update_session_status(self, *, session_id: str, status: str) -> None:
        session = self._session(session_id)
        ensure_session_transition(session_id=session_id, from_status=session.status, to_status=status)
        now = _utcnow()
        completed_at = session.completed_at
        if status == SessionStatus.COMPLETED and completed_at is None:
            completed_at = now
        self.sessions[session_id] = replace(session, status=status, updated_at=now, completed_at=completed_at)

    async def update_session_progress(
        self,
        *,
        session_id: str,
        offset: int,
        distributed: int,
        remaining: int,
        sequence: int,
    ) -> None:
        session = self._session(session_id)
        if distributed + remaining != session.total_quota:
            raise DomainInvariantError("distributed + remaining must equal the session quota")
        if sequence > session.total_sources:
            raise DomainInvariantError("sequence pointer exceeds the number of sources")
        self.sessions[session_id] = replace(
            session,
            current_offset=offset,
            total_distributed=distributed,
            remaining=remaining,
            current_sequence=sequence,
            updated_at=_utcnow(),
        )

    async def create_source_states(self, *, session_id: str, sources: list[SourceStateSnapshot]) -> None:
        self._session(session_id)
        now = _utcnow()
        for source in sources:
            key = (session_id, source.source_id)
            if key in self.sources:
                continue
            self.sources[key] = replace(source, session_id=session_id, created_at=now, updated_at=now)

    async def list_source_states(self, *, session_id: str) -> list[SourceStateSnapshot]:
        items = [source for (owner, _), source in self.sources.items() if owner == session_id]
        return sorted(items, key=lambda source: source.sequence_order)

    async def get_source_state(self, *, session_id: str, source_id: str) -> SourceStateSnapshot | None:
        return self.sources.get((session_id, source_id))

    async def update_source_status(
        self,
        *,
        session_id: str,
        source_id: str,
        status: str,
        reason: str | None = None,
    ) -> None:
        source = self._source(session_id, source_id)
        ensure_source_transition(source_id=source_id, from_status=source.status, to_status=status)
        now = _utcnow()
        self.sources[(session_id, source_id)] = replace(
            source,
            status=status,
            failure_reason=reason if status == SourceStatus.FAILED else source.failure_reason,
            started_at=now if status == SourceStatus.RUNNING else source.started_at,
            executed_at=now if status == SourceStatus.COMPLETED else source.executed_at,
            updated_at=now,
        )

    async def update_source_job_handle(self, *, session_id: str, source_id: str, job_handle: str) -> None:
        source = self._source(session_id, source_id)
        self.sources[(session_id, source_id)] = replace(source, job_handle=job_handle, updated_at=_utcnow())

    async def update_source_results(self, *, session_id: str, source_id: str, count: int, status: str) -> None:
        source = self._source(session_id, source_id)
        ensure_source_transition(source_id=source_id, from_status=source.status, to_status=status)
        now = _utcnow()
        self.sources[(session_id, source_id)] = replace(
            source,
            status=status,
            retrieved_count=count,
            failure_reason=None if status == SourceStatus.COMPLETED else source.failure_reason,
            executed_at=now if status == SourceStatus.COMPLETED else source.executed_at,
            updated_at=now,
        )

    async def append_execution_history(self, *, session_id: str, entry: dict[str, object]) -> None:
        session = self._session(session_id)
        self.sessions[session_id] = replace(
            session,
            execution_history=[*session.execution_history, dict(entry)],
            updated_at=_utcnow(),
        )

    async def claim_next_pending_source(self, *, session_id: str) -> SourceStateSnapshot | None:
        for source in await self.list_source_states(session_id=session_id):
            if source.status == SourceStatus.RUNNING:
                raise DomainInvariantError(f"session {session_id} already has a running source")
        for source in await self.list_source_states(session_id=session_id):
            if source.status == SourceStatus.PENDING:
                await self.update_source_status(
                    session_id=session_id,
                    source_id=source.source_id,
                    status=SourceStatus.RUNNING,
                )
                return self.sources[(session_id, source.source_id)]
        return None

    async def list_running_sources(self) -> list[SourceStateSnapshot]:
        running = [source for source in self.sources.values() if source.status == SourceStatus.RUNNING]
        return sorted(running, key=lambda source: (source.session_id, source.sequence_order))

    async def find_source_by_job_handle(self, *, job_handle: str) -> SourceStateSnapshot | None:
        for source in self.sources.values():
            if source.job_handle == job_handle:
                return source
        return None

    async def record_job_completion(
        self,
        *,
        job_handle: str,
        session_id: str | None,
        source_id: str | None,
        results_count: int,
        status: str,
    ) -> None:
        self.completions[job_handle] = {
            "job_handle": job_handle,
            "session_id": session_id,
            "source_id": source_id,
            "results_count": results_count,
            "status": status,
            "completed_at": _utcnow(),
        }

    def _session(self, session_id: str) -> SessionSnapshot:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return session

    def _source(self, session_id: str, source_id: str) -> SourceStateSnapshot:
        source = self.sources.get((session_id, source_id))
        if source is None:
            raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")
        return source


@dataclass
class InMemoryKnownErrorRepository:
    errors: dict[str, KnownErrorRecord] = field(default_factory=dict)

    async def save_known_error(self, *, record: KnownErrorRecord) -> KnownErrorRecord:
        now = _utcnow()
        existing = self.errors.get(record.job_handle)
        if existing is None:
            stored = replace(record, created_at=now, updated_at=now, occurrences=1)
        else:
            stored = replace(
                existing,
                category=record.category,
                message=record.message,
                details=dict(record.details),
                exit_code=record.exit_code,
                end_type=record.end_type,
                duration_ms=record.duration_ms,
                session_id=record.session_id or existing.session_id,
                source_id=record.source_id or existing.source_id,
                occurrences=existing.occurrences + 1,
                updated_at=now,
            )
        self.errors[record.job_handle] = stored
        return stored

    async def get_known_error(self, *, job_handle: str) -> KnownErrorRecord | None:
        return self.errors.get(job_handle)

    async def list_known_errors(
        self,
        *,
        category: str | None = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> list[KnownErrorRecord]:
        items = [
            record
            for record in self.errors.values()
            if (category is None or record.category == category)
            and (include_resolved or not record.is_resolved)
        ]
        items.sort(key=lambda record: record.updated_at or _utcnow(), reverse=True)
        return items[:limit]

    async def mark_resolved(self, *, job_handle: str, notes: str) -> KnownErrorRecord | None:
        existing = self.errors.get(job_handle)
        if existing is None:
            return None
        now = _utcnow()
        resolved = replace(existing, is_resolved=True, resolution_notes=notes, resolved_at=now, updated_at=now)
        self.errors[job_handle] = resolved
        return resolved

    async def error_statistics(self) -> list[KnownErrorStatistics]:
        grouped: dict[str, list[KnownErrorRecord]] = {}
        for record in self.errors.values():
            grouped.setdefault(record.category, []).append(record)
        stats = []
        for category, records in grouped.items():
            created = [record.created_at for record in records if record.created_at is not None]
            updated = [record.updated_at for record in records if record.updated_at is not None]
            resolved = sum(1 for record in records if record.is_resolved)
            stats.append(
                KnownErrorStatistics(
                    category=category,
                    total=len(records),
                    resolved=resolved,
                    unresolved=len(records) - resolved,
                    first_seen=min(created) if created else None,
                    last_seen=max(updated) if updated else None,
                )
            )
        return sorted(stats, key=lambda item: (-item.total, item.category))
