from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging

from outreach.domain.contracts import KnownErrorRepository, MetricsCollector
from outreach.domain.error_taxonomy import (
    CATEGORY_MESSAGES,
    KNOWN_ERROR_CATEGORIES,
    RECOMMENDATIONS,
    Recommendation,
    is_known_category,
    match_category,
    requires_operator_action,
)
from outreach.domain.errors import DomainValidationError
from outreach.domain.models import Classification, JobStatus, KnownErrorRecord, KnownErrorStatistics

COMPONENT_ID = "domain.known_errors"
MAX_TEXT_FIELDS = 200
logger = logging.getLogger("runtime")


def collect_text(payload: object) -> str:
    """Concatenate every string reachable in a runner response, lower-cased."""
    parts: list[str] = []
    stack: list[object] = [payload]
    while stack and len(parts) < MAX_TEXT_FIELDS:
        item = stack.pop()
        if item is None:
            continue
        if isinstance(item, BaseException):
            parts.append(str(item))
            status_code = getattr(item, "status_code", None)
            if status_code is not None:
                parts.append(str(status_code))
        elif isinstance(item, JobStatus):
            parts.append(item.text())
            if item.exit_code is not None:
                parts.append(f"exit code {item.exit_code}")
            if item.end_type:
                parts.append(item.end_type)
        elif isinstance(item, str):
            parts.append(item)
        elif isinstance(item, (int, float)) and not isinstance(item, bool):
            parts.append(str(item))
        elif isinstance(item, Mapping):
            stack.extend(reversed(list(item.values())))
        elif isinstance(item, (list, tuple)):
            stack.extend(reversed(item))
    return " ".join(part for part in parts if part).lower()


@dataclass
class KnownErrorClassifier:
    repository: KnownErrorRepository
    metrics: MetricsCollector

    def classify(self, payload: object) -> Classification:
        try:
            text = collect_text(payload)
            category = match_category(text)
        except Exception:
            logger.exception("known error classification failed", extra={"category": "unknown_error"})
            return Classification(
                category="unknown_error",
                message=CATEGORY_MESSAGES["unknown_error"],
                details={"classification_failed": True},
            )
        return Classification(
            category=category,
            message=CATEGORY_MESSAGES[category],
            details={
                "excerpt": text[:500],
                "requires_operator_action": requires_operator_action(category),
            },
        )

    async def save_known_error(
        self,
        *,
        job_handle: str,
        classification: Classification,
        status: JobStatus | None = None,
        session_id: str | None = None,
        source_id: str | None = None,
    ) -> KnownErrorRecord:
        details = dict(classification.details)
        if session_id is not None:
            details["session_id"] = session_id
        if source_id is not None:
            details["source_id"] = source_id
        record = KnownErrorRecord(
            job_handle=job_handle,
            category=classification.category,
            message=classification.message,
            details=details,
            exit_code=status.exit_code if status is not None else None,
            end_type=status.end_type if status is not None else None,
            duration_ms=status.duration_ms if status is not None else None,
            session_id=session_id,
            source_id=source_id,
        )
        saved = await self.repository.save_known_error(record=record)
        self.metrics.increment("known_errors_total", category=classification.category)
        logger.warning(
            "known error recorded",
            extra={
                "job_handle": job_handle,
                "session_id": session_id,
                "source_id": source_id,
                "category": classification.category,
            },
        )
        return saved

    async def resolve(self, *, job_handle: str, notes: str) -> KnownErrorRecord | None:
        if not notes.strip():
            raise DomainValidationError("resolution notes must not be empty")
        return await self.repository.mark_resolved(job_handle=job_handle, notes=notes.strip())

    async def list_by_category(
        self,
        *,
        category: str | None = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> list[KnownErrorRecord]:
        if category is not None and not is_known_category(category):
            raise DomainValidationError(f"unknown error category: {category}")
        return await self.repository.list_known_errors(
            category=category,
            include_resolved=include_resolved,
            limit=limit,
        )

    async def statistics(self) -> list[KnownErrorStatistics]:
        return await self.repository.error_statistics()

    @staticmethod
    def categories() -> tuple[str, ...]:
        return KNOWN_ERROR_CATEGORIES

    @staticmethod
    def recommendation(category: str) -> Recommendation:
        if not is_known_category(category):
            raise DomainValidationError(f"unknown error category: {category}")
        return RECOMMENDATIONS[category]  # type: ignore[index]
