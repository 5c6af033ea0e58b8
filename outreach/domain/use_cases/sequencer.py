from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import time
import weakref

from outreach.domain.contracts import DistributionRepository, JobRunnerClient, MetricsCollector
from outreach.domain.errors import (
    DomainValidationError,
    LaunchError,
    RunnerError,
    RunnerNotFoundError,
    SequenceBusyError,
    SessionNotFoundError,
    SourceNotFoundError,
)
from outreach.domain.ids import new_session_id
from outreach.domain.models import (
    AdvanceResult,
    AdvanceStatus,
    JobState,
    LaunchOverrides,
    LaunchRequest,
    PlannedSource,
    RecoveryResult,
    SequenceStatus,
    SessionSnapshot,
    SessionStatus,
    SourceSpec,
    SourceStateSnapshot,
    SourceStatus,
    StartResult,
    StartStatus,
)
from outreach.domain.planner import plan
from outreach.domain.retry import LaunchBackoffPolicy
from outreach.domain.use_cases.recovery import RecoveryChain

COMPONENT_ID = "domain.sequencer"
REASON_LIFETIME_EXCEEDED = "job_lifetime_exceeded"
REASON_HANDLE_MISSING = "launch_handle_missing"

logger = logging.getLogger("runtime")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class SequencerSettings:
    max_job_lifetime_seconds: int = 7200
    launch_grace_seconds: int = 300


@dataclass
class SessionLocks:
    """In-process mutual exclusion keyed by session (or campaign) id.

    Entries are weak: a lock disappears once no caller holds or awaits it.
    """

    locks: weakref.WeakValueDictionary[str, asyncio.Lock] = field(default_factory=weakref.WeakValueDictionary)

    def lock_for(self, key: str) -> asyncio.Lock:
        lock = self.locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self.locks[key] = lock
        return lock


@dataclass
class ExecutionSequencer:
    """Launches the sources of a session one at a time, in sequence order.

    All reads and writes of a session happen under its lock, so the pending
    scan and the running marker form one critical section. A source stuck in
    running is settled before the next launch: finished jobs are recovered,
    jobs past the maximum lifetime are failed, anything else blocks the
    session with SequenceBusyError.
    """

    repository: DistributionRepository
    runner: JobRunnerClient
    recovery: RecoveryChain
    metrics: MetricsCollector
    launch_policy: LaunchBackoffPolicy = field(default_factory=LaunchBackoffPolicy)
    settings: SequencerSettings = field(default_factory=SequencerSettings)
    locks: SessionLocks = field(default_factory=SessionLocks)
    clock: Callable[[], datetime] = _utcnow

    async def resume_or_start(
        self,
        *,
        campaign_id: str,
        sources: Sequence[SourceSpec],
        quota: int,
    ) -> StartResult:
        if not campaign_id.strip():
            raise DomainValidationError("campaign id must not be empty")

        async with self.locks.lock_for(f"campaign:{campaign_id}"):
            existing = await self.repository.get_active_session_by_campaign(campaign_id=campaign_id)
            if existing is not None:
                return await self._resume(existing)

            planned = plan(sources, quota)
            now = self.clock()
            session = SessionSnapshot(
                session_id=new_session_id(),
                campaign_id=campaign_id,
                total_quota=quota,
                current_offset=0,
                total_distributed=0,
                remaining=quota,
                current_sequence=0,
                total_sources=len(planned),
                sources_config=[_planned_config(item) for item in planned],
                execution_history=[],
                status=SessionStatus.ACTIVE,
                created_at=now,
                updated_at=now,
            )
            persisted = await self.repository.create_session(session=session)
            if persisted.session_id != session.session_id:
                # Another process created the active session first.
                return await self._resume(persisted)

            states = [_source_state(session.session_id, item) for item in planned]
            await self.repository.create_source_states(session_id=session.session_id, sources=states)
            await self.repository.append_execution_history(
                session_id=session.session_id,
                entry={
                    "event": "session_created",
                    "quota": quota,
                    "sources": len(planned),
                    "timestamp": now.isoformat(),
                },
            )
            self.metrics.increment("sequence_sessions_created_total")
            logger.info(
                "sequence session created",
                extra={"session_id": session.session_id, "status": StartStatus.NEW.value},
            )
            return StartResult(session_id=session.session_id, status=StartStatus.NEW, next_source=states[0])

    async def _resume(self, session: SessionSnapshot) -> StartResult:
        states = await self.repository.list_source_states(session_id=session.session_id)
        if not states and session.sources_config:
            # Crash between session insert and source insert: rebuild from the stored plan.
            states = [_state_from_config(session.session_id, item) for item in session.sources_config]
            await self.repository.create_source_states(session_id=session.session_id, sources=states)

        next_source = next((state for state in states if state.status == SourceStatus.PENDING), None)
        has_running = any(state.status == SourceStatus.RUNNING for state in states)
        if next_source is None and not has_running:
            await self._complete_session(session.session_id)
            return StartResult(session_id=session.session_id, status=StartStatus.COMPLETED, next_source=None)

        logger.info(
            "sequence session resumed",
            extra={"session_id": session.session_id, "status": StartStatus.RESUMED.value},
        )
        return StartResult(session_id=session.session_id, status=StartStatus.RESUMED, next_source=next_source)

    async def advance(self, *, session_id: str, overrides: LaunchOverrides | None = None) -> AdvanceResult:
        async with self.locks.lock_for(session_id):
            session = await self._require_session(session_id)
            if session.status == SessionStatus.COMPLETED:
                return AdvanceResult(
                    session_id=session_id,
                    status=AdvanceStatus.COMPLETED,
                    remaining=session.remaining,
                )

            states = await self.repository.list_source_states(session_id=session_id)
            for state in states:
                if state.status == SourceStatus.RUNNING:
                    await self._settle(state, raise_when_busy=True)

            source = await self.repository.claim_next_pending_source(session_id=session_id)
            if source is None:
                await self._complete_session(session_id)
                return AdvanceResult(
                    session_id=session_id,
                    status=AdvanceStatus.COMPLETED,
                    remaining=session.remaining,
                )

            job_handle = await self._launch(source, overrides or LaunchOverrides())

            # Re-read counters: settling above may have appended history but never touches them.
            session = await self._require_session(session_id)
            distributed = session.total_distributed + source.allocated
            remaining = session.total_quota - distributed
            sequence = min(session.current_sequence + 1, session.total_sources)
            await self.repository.update_session_progress(
                session_id=session_id,
                offset=session.current_offset + source.allocated,
                distributed=distributed,
                remaining=remaining,
                sequence=sequence,
            )
            await self.repository.append_execution_history(
                session_id=session_id,
                entry={
                    "event": "launched",
                    "source_id": source.source_id,
                    "job_handle": job_handle,
                    "status": SourceStatus.RUNNING.value,
                    "count": source.allocated,
                    "range": [source.range_start, source.range_end],
                    "timestamp": self.clock().isoformat(),
                },
            )
            logger.info(
                "source launched",
                extra={"session_id": session_id, "source_id": source.source_id, "job_handle": job_handle},
            )
            return AdvanceResult(
                session_id=session_id,
                status=AdvanceStatus.LAUNCHED,
                source_id=source.source_id,
                job_handle=job_handle,
                allocated=source.allocated,
                remaining=remaining,
            )

    async def _launch(self, source: SourceStateSnapshot, overrides: LaunchOverrides) -> str:
        request = LaunchRequest(
            source_id=source.source_id,
            template=source.template,
            result_count=overrides.result_count if overrides.result_count is not None else source.allocated,
            start_page=overrides.start_page if overrides.start_page is not None else source.start_page,
            page_count=overrides.page_count if overrides.page_count is not None else source.page_count,
            arguments={key: value for key, value in overrides.arguments.items() if value is not None},
        )
        started = time.monotonic()
        try:
            job_handle = await self.launch_policy.run(lambda: self.runner.launch(request))
        except RunnerError as exc:
            await self.repository.update_source_status(
                session_id=source.session_id,
                source_id=source.source_id,
                status=SourceStatus.FAILED,
                reason=f"launch_failed: {exc}",
            )
            await self.repository.append_execution_history(
                session_id=source.session_id,
                entry={
                    "event": "launch_failed",
                    "source_id": source.source_id,
                    "status": SourceStatus.FAILED.value,
                    "error": str(exc),
                    "timestamp": self.clock().isoformat(),
                },
            )
            self.metrics.increment("sequence_launch_failures_total", error=type(exc).__name__)
            logger.warning(
                "source launch failed",
                extra={"session_id": source.session_id, "source_id": source.source_id, "status": str(exc)},
            )
            raise LaunchError(
                f"launch of source {source.source_id} failed: {exc}",
                session_id=source.session_id,
                source_id=source.source_id,
            ) from exc

        await self.repository.update_source_job_handle(
            session_id=source.session_id,
            source_id=source.source_id,
            job_handle=job_handle,
        )
        self.metrics.increment("sequence_launches_total")
        self.metrics.observe("launch_duration_ms", (time.monotonic() - started) * 1000)
        return job_handle

    async def settle_source(self, *, session_id: str, source_id: str) -> bool:
        """Bring one running source to a terminal state if its job allows it.

        Returns False when the job is still legitimately running.
        """
        async with self.locks.lock_for(session_id):
            source = await self.repository.get_source_state(session_id=session_id, source_id=source_id)
            if source is None or source.status != SourceStatus.RUNNING:
                return False
            return await self._settle(source, raise_when_busy=False)

    async def _settle(self, source: SourceStateSnapshot, *, raise_when_busy: bool) -> bool:
        age_seconds = (self.clock() - (source.started_at or source.updated_at or self.clock())).total_seconds()

        if source.job_handle is None:
            if age_seconds > self.settings.launch_grace_seconds:
                await self._fail_running(source, reason=REASON_HANDLE_MISSING)
                return True
            return self._busy(source, "launch in progress", raise_when_busy)

        try:
            status = await self.runner.get_job_status(source.job_handle)
        except RunnerNotFoundError:
            status = None
        except RunnerError as exc:
            return self._busy(source, f"job status unavailable: {exc}", raise_when_busy)

        if status is None or status.state == JobState.FINISHED:
            if await self._recover_running(source, source.job_handle):
                return True
            return self._busy(source, "job still running", raise_when_busy)

        if age_seconds > self.settings.max_job_lifetime_seconds:
            # An unrecognized runner state may still hide a finished job.
            if status.state != JobState.RUNNING and await self._recover_running(source, source.job_handle):
                return True
            await self._fail_running(source, reason=REASON_LIFETIME_EXCEEDED)
            return True
        return self._busy(source, "job still running", raise_when_busy)

    async def _recover_running(self, source: SourceStateSnapshot, job_handle: str) -> bool:
        """Runs the recovery chain; True when it moved the source out of running."""
        await self.recovery.recover(
            job_handle=job_handle,
            session_id=source.session_id,
            source_id=source.source_id,
        )
        refreshed = await self.repository.get_source_state(
            session_id=source.session_id,
            source_id=source.source_id,
        )
        return refreshed is not None and refreshed.status != SourceStatus.RUNNING

    def _busy(self, source: SourceStateSnapshot, detail: str, raise_when_busy: bool) -> bool:
        if raise_when_busy:
            raise SequenceBusyError(
                f"source {source.source_id} of session {source.session_id} is running: {detail}"
            )
        return False

    async def _fail_running(self, source: SourceStateSnapshot, *, reason: str) -> None:
        await self.repository.update_source_status(
            session_id=source.session_id,
            source_id=source.source_id,
            status=SourceStatus.FAILED,
            reason=reason,
        )
        await self.repository.append_execution_history(
            session_id=source.session_id,
            entry={
                "event": "timed_out",
                "source_id": source.source_id,
                "job_handle": source.job_handle,
                "status": SourceStatus.FAILED.value,
                "reason": reason,
                "timestamp": self.clock().isoformat(),
            },
        )
        self.metrics.increment("sequence_sources_timed_out_total", reason=reason)
        logger.warning(
            "running source failed by timeout",
            extra={
                "session_id": source.session_id,
                "source_id": source.source_id,
                "job_handle": source.job_handle,
                "status": reason,
            },
        )

    async def recover_results(
        self,
        *,
        session_id: str,
        source_id: str,
        job_handle: str | None = None,
    ) -> RecoveryResult:
        async with self.locks.lock_for(session_id):
            await self._require_session(session_id)
            source = await self.repository.get_source_state(session_id=session_id, source_id=source_id)
            if source is None:
                raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")
            handle = job_handle or source.job_handle
            if handle is None:
                raise DomainValidationError(f"source {source_id} has no job handle to recover")
            return await self.recovery.recover(job_handle=handle, session_id=session_id, source_id=source_id)

    async def get_sequence_status(self, *, session_id: str) -> SequenceStatus:
        session = await self._require_session(session_id)
        sources = await self.repository.list_source_states(session_id=session_id)
        return SequenceStatus(session=session, sources=sources)

    async def _require_session(self, session_id: str) -> SessionSnapshot:
        session = await self.repository.get_session(session_id=session_id)
        if session is None:
            raise SessionNotFoundError(f"session {session_id} not found")
        return session

    async def _complete_session(self, session_id: str) -> None:
        session = await self._require_session(session_id)
        if session.status == SessionStatus.COMPLETED:
            return
        await self.repository.update_session_status(session_id=session_id, status=SessionStatus.COMPLETED)
        await self.repository.append_execution_history(
            session_id=session_id,
            entry={"event": "session_completed", "timestamp": self.clock().isoformat()},
        )
        logger.info("sequence session completed", extra={"session_id": session_id})


def _planned_config(item: PlannedSource) -> dict[str, object]:
    return {
        "source_id": item.source_id,
        "template": item.template,
        "priority": item.priority,
        "allocated": item.allocated,
        "sequence_order": item.sequence_order,
        "start_page": item.start_page,
        "page_count": item.page_count,
        "range_start": item.range_start,
        "range_end": item.range_end,
    }


def _source_state(session_id: str, item: PlannedSource) -> SourceStateSnapshot:
    return SourceStateSnapshot(
        session_id=session_id,
        source_id=item.source_id,
        template=item.template,
        priority=item.priority,
        sequence_order=item.sequence_order,
        allocated=item.allocated,
        start_page=item.start_page,
        page_count=item.page_count,
        range_start=item.range_start,
        range_end=item.range_end,
        status=SourceStatus.PENDING,
    )


def _state_from_config(session_id: str, config: dict[str, object]) -> SourceStateSnapshot:
    return SourceStateSnapshot(
        session_id=session_id,
        source_id=str(config["source_id"]),
        template=str(config["template"]),
        priority=float(config.get("priority") or 1),  # type: ignore[arg-type]
        sequence_order=int(config["sequence_order"]),  # type: ignore[call-overload]
        allocated=int(config["allocated"]),  # type: ignore[call-overload]
        start_page=_optional_int(config.get("start_page")),
        page_count=_optional_int(config.get("page_count")),
        range_start=_optional_int(config.get("range_start")),
        range_end=_optional_int(config.get("range_end")),
        status=SourceStatus.PENDING,
    )


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[call-overload]
