from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging

from outreach.domain.contracts import DistributionRepository, JobRunnerClient, MetricsCollector
from outreach.domain.errors import DomainInvariantError, RunnerError, SourceNotFoundError
from outreach.domain.lifecycle import can_transition_source
from outreach.domain.models import (
    Classification,
    JobState,
    JobStatus,
    RecoveryResult,
    RecoveryStatus,
    SourceStateSnapshot,
    SourceStatus,
)
from outreach.domain.output_signals import detect_output_signal
from outreach.domain.records import prepare_batch
from outreach.domain.result_shapes import (
    DownloadUrlShape,
    RecordsShape,
    parse_download_body,
    parse_result_shape,
)
from outreach.domain.use_cases.known_errors import KnownErrorClassifier

COMPONENT_ID = "domain.recovery.chain"

TIER_STRUCTURED = "structured_fetch"
TIER_STATUS_OUTPUT = "status_then_fetch"
TIER_ARCHIVE = "archive"
TIER_OUTPUT_TEXT = "output_text"

ARCHIVE_NAME_PATTERNS = (
    "search_results_{handle}.json",
    "results_{handle}.json",
    "{handle}/result.json",
)

logger = logging.getLogger("runtime")


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class RecoverySettings:
    tier_timeout_seconds: float = 60.0
    archive_base_url: str | None = None


@dataclass
class _Attempt:
    """Scratch state of a single recover() call."""

    job_handle: str
    source: SourceStateSnapshot | None
    messages: list[str] = field(default_factory=list)
    status: JobStatus | None = None


@dataclass
class RecoveryChain:
    """Obtains the records of a finished job through ordered fallback tiers.

    Tiers run strictly in order, each under its own timeout. The first tier
    that yields a usable batch wins. A batch made only of identity-less records
    is treated as a masked no-results outcome and sent to the output-text tier.
    Every outcome that touches a source leaves it in a terminal state.
    """

    repository: DistributionRepository
    runner: JobRunnerClient
    classifier: KnownErrorClassifier
    metrics: MetricsCollector
    settings: RecoverySettings = field(default_factory=RecoverySettings)
    clock: Callable[[], datetime] = _utcnow

    async def recover(
        self,
        *,
        job_handle: str,
        session_id: str | None = None,
        source_id: str | None = None,
    ) -> RecoveryResult:
        source: SourceStateSnapshot | None = None
        if session_id is not None and source_id is not None:
            source = await self.repository.get_source_state(session_id=session_id, source_id=source_id)
            if source is None:
                raise SourceNotFoundError(f"source {source_id} not found in session {session_id}")
            if source.status == SourceStatus.PENDING:
                raise DomainInvariantError(f"source {source_id} has not been launched yet")

        attempt = _Attempt(job_handle=job_handle, source=source)
        masked_no_results = False
        tiers: tuple[tuple[str, Callable[[_Attempt], Awaitable[list[dict[str, object]]]]], ...] = (
            (TIER_STRUCTURED, self._structured_fetch),
            (TIER_STATUS_OUTPUT, self._status_then_fetch),
            (TIER_ARCHIVE, self._archive_fetch),
        )
        for tier, fetch in tiers:
            records = await self._run_tier(tier, fetch, attempt)
            if not records:
                continue
            batch = prepare_batch(records, tier=tier, job_handle=job_handle, recovered_at=self.clock())
            if batch.all_incomplete:
                masked_no_results = True
                attempt.messages.append(f"{tier}: batch of {len(records)} records has no identity fields")
                break
            return await self._complete_with_records(attempt, tier=tier, records=batch.records)

        return await self._resolve_from_output_text(attempt, masked_no_results=masked_no_results)

    async def _run_tier(
        self,
        tier: str,
        fetch: Callable[[_Attempt], Awaitable[list[dict[str, object]]]],
        attempt: _Attempt,
    ) -> list[dict[str, object]]:
        try:
            records = await asyncio.wait_for(fetch(attempt), timeout=self.settings.tier_timeout_seconds)
        except TimeoutError:
            attempt.messages.append(f"{tier}: timed out")
            self.metrics.increment("recovery_attempts_total", tier=tier, outcome="timeout")
            return []
        except RunnerError as exc:
            attempt.messages.append(f"{tier}: {exc}")
            self.metrics.increment("recovery_attempts_total", tier=tier, outcome="error")
            logger.info(
                "recovery tier failed",
                extra={"job_handle": attempt.job_handle, "tier": tier, "status": str(exc)},
            )
            return []
        outcome = "records" if records else "empty"
        self.metrics.increment("recovery_attempts_total", tier=tier, outcome=outcome)
        return records

    async def _structured_fetch(self, attempt: _Attempt) -> list[dict[str, object]]:
        payload = await self.runner.fetch_structured_result(attempt.job_handle)
        return await self._records_from_payload(payload, attempt, tier=TIER_STRUCTURED)

    async def _status_then_fetch(self, attempt: _Attempt) -> list[dict[str, object]]:
        status = await self.runner.get_job_status(attempt.job_handle)
        attempt.status = status
        if status.state != JobState.FINISHED:
            attempt.messages.append(f"{TIER_STATUS_OUTPUT}: job state is {status.state}")
            return []
        payload = await self.runner.fetch_output(attempt.job_handle)
        return await self._records_from_payload(payload, attempt, tier=TIER_STATUS_OUTPUT)

    async def _archive_fetch(self, attempt: _Attempt) -> list[dict[str, object]]:
        base_url = self.settings.archive_base_url
        if not base_url:
            return []
        for pattern in ARCHIVE_NAME_PATTERNS:
            url = f"{base_url.rstrip('/')}/{pattern.format(handle=attempt.job_handle)}"
            try:
                document = await self.runner.download(url)
            except RunnerError as exc:
                logger.debug("archive object unavailable", extra={"job_handle": attempt.job_handle, "status": str(exc)})
                continue
            records = parse_download_body(document.text, document.content_type)
            if records:
                return records
        return []

    async def _records_from_payload(
        self,
        payload: object,
        attempt: _Attempt,
        *,
        tier: str,
    ) -> list[dict[str, object]]:
        shape = parse_result_shape(payload)
        if isinstance(shape, RecordsShape):
            return shape.records
        if isinstance(shape, DownloadUrlShape):
            document = await self.runner.download(shape.url)
            return parse_download_body(document.text, document.content_type)
        attempt.messages.append(f"{tier}: {shape.reason}")
        return []

    async def _resolve_from_output_text(self, attempt: _Attempt, *, masked_no_results: bool) -> RecoveryResult:
        status = attempt.status
        if status is None:
            try:
                status = await asyncio.wait_for(
                    self.runner.get_job_status(attempt.job_handle),
                    timeout=self.settings.tier_timeout_seconds,
                )
            except TimeoutError:
                attempt.messages.append(f"{TIER_OUTPUT_TEXT}: timed out")
            except RunnerError as exc:
                attempt.messages.append(f"{TIER_OUTPUT_TEXT}: {exc}")
            attempt.status = status

        signal = detect_output_signal(status) if status is not None else None
        self.metrics.increment("recovery_attempts_total", tier=TIER_OUTPUT_TEXT, outcome=signal or "none")

        if signal == "already_retrieved":
            return await self._complete_without_records(
                attempt,
                status=RecoveryStatus.ALREADY_RETRIEVED,
                message="job results were already retrieved",
            )
        if signal == "no_results" or (masked_no_results and signal is None):
            classification = Classification(
                category="no_results_found",
                message="Job finished without results",
                details={"masked": masked_no_results, "messages": list(attempt.messages)},
            )
            await self._save_known_error(attempt, classification)
            return await self._complete_without_records(
                attempt,
                status=RecoveryStatus.NO_RESULTS,
                message="job finished without results",
                category=classification.category,
            )
        if signal == "manually_stopped":
            classification = Classification(
                category="manually_stopped",
                message="Job was stopped before completion",
                details={"messages": list(attempt.messages)},
            )
            return await self._fail(attempt, classification, status=RecoveryStatus.FAILED)
        if signal == "invalid_parameters":
            classification = Classification(
                category="argument_validation_error",
                message="Runner rejected the job arguments",
                details={"messages": list(attempt.messages)},
            )
            return await self._fail(attempt, classification, status=RecoveryStatus.FAILED)

        if status is not None and status.state == JobState.RUNNING:
            return RecoveryResult(
                job_handle=attempt.job_handle,
                status=RecoveryStatus.JOB_RUNNING,
                message="job is still running",
                session_id=attempt.source.session_id if attempt.source else None,
                source_id=attempt.source.source_id if attempt.source else None,
            )

        classification = self.classifier.classify([attempt.messages, status])
        return await self._fail(attempt, classification, status=RecoveryStatus.EXHAUSTED)

    async def _complete_with_records(
        self,
        attempt: _Attempt,
        *,
        tier: str,
        records: list[dict[str, object]],
    ) -> RecoveryResult:
        await self._write_terminal(attempt, status=SourceStatus.COMPLETED, count=len(records), tier=tier)
        logger.info(
            "recovery succeeded",
            extra={
                "job_handle": attempt.job_handle,
                "session_id": attempt.source.session_id if attempt.source else None,
                "source_id": attempt.source.source_id if attempt.source else None,
                "tier": tier,
                "status": RecoveryStatus.RECOVERED.value,
            },
        )
        return RecoveryResult(
            job_handle=attempt.job_handle,
            status=RecoveryStatus.RECOVERED,
            records=records,
            tier=tier,
            message=f"recovered {len(records)} records",
            session_id=attempt.source.session_id if attempt.source else None,
            source_id=attempt.source.source_id if attempt.source else None,
        )

    async def _complete_without_records(
        self,
        attempt: _Attempt,
        *,
        status: RecoveryStatus,
        message: str,
        category: str | None = None,
    ) -> RecoveryResult:
        await self._write_terminal(attempt, status=SourceStatus.COMPLETED, count=0, tier=TIER_OUTPUT_TEXT)
        return RecoveryResult(
            job_handle=attempt.job_handle,
            status=status,
            tier=TIER_OUTPUT_TEXT,
            category=category,
            message=message,
            session_id=attempt.source.session_id if attempt.source else None,
            source_id=attempt.source.source_id if attempt.source else None,
        )

    async def _fail(
        self,
        attempt: _Attempt,
        classification: Classification,
        *,
        status: RecoveryStatus,
    ) -> RecoveryResult:
        await self._save_known_error(attempt, classification)
        await self._write_terminal(
            attempt,
            status=SourceStatus.FAILED,
            count=0,
            tier=TIER_OUTPUT_TEXT,
            reason=classification.category,
        )
        logger.warning(
            "recovery ended without records",
            extra={
                "job_handle": attempt.job_handle,
                "session_id": attempt.source.session_id if attempt.source else None,
                "source_id": attempt.source.source_id if attempt.source else None,
                "category": classification.category,
                "status": status.value,
            },
        )
        return RecoveryResult(
            job_handle=attempt.job_handle,
            status=status,
            tier=None if status == RecoveryStatus.EXHAUSTED else TIER_OUTPUT_TEXT,
            category=classification.category,
            message=classification.message,
            session_id=attempt.source.session_id if attempt.source else None,
            source_id=attempt.source.source_id if attempt.source else None,
        )

    async def _save_known_error(self, attempt: _Attempt, classification: Classification) -> None:
        await self.classifier.save_known_error(
            job_handle=attempt.job_handle,
            classification=classification,
            status=attempt.status,
            session_id=attempt.source.session_id if attempt.source else None,
            source_id=attempt.source.source_id if attempt.source else None,
        )

    async def _write_terminal(
        self,
        attempt: _Attempt,
        *,
        status: SourceStatus,
        count: int,
        tier: str,
        reason: str | None = None,
    ) -> None:
        source = attempt.source
        await self.repository.record_job_completion(
            job_handle=attempt.job_handle,
            session_id=source.session_id if source else None,
            source_id=source.source_id if source else None,
            results_count=count,
            status=status.value,
        )
        if source is None:
            return
        if not can_transition_source(source.status, status):
            # A completed source is never downgraded by a later failed attempt.
            return
        if source.status == SourceStatus.COMPLETED and count <= source.retrieved_count:
            return
        if status == SourceStatus.COMPLETED:
            await self.repository.update_source_results(
                session_id=source.session_id,
                source_id=source.source_id,
                count=count,
                status=status.value,
            )
        else:
            await self.repository.update_source_status(
                session_id=source.session_id,
                source_id=source.source_id,
                status=status.value,
                reason=reason,
            )
        await self.repository.append_execution_history(
            session_id=source.session_id,
            entry={
                "event": "recovery",
                "source_id": source.source_id,
                "job_handle": attempt.job_handle,
                "tier": tier,
                "status": status.value,
                "count": count,
                "timestamp": self.clock().isoformat(),
            },
        )
