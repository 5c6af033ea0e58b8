from __future__ import annotations

from outreach.api.handlers.deps import ApiDeps
from outreach.api.schemas import (
    CategoriesResponse,
    KnownErrorListResponse,
    KnownErrorResponse,
    KnownErrorStatisticsItem,
    KnownErrorStatisticsResponse,
    RecommendationResponse,
)
from outreach.domain.models import KnownErrorRecord

COMPONENT_ID = "api.known_errors"


def known_error_response(record: KnownErrorRecord) -> KnownErrorResponse:
    return KnownErrorResponse(
        job_handle=record.job_handle,
        category=record.category,
        message=record.message,
        details=record.details,
        exit_code=record.exit_code,
        end_type=record.end_type,
        duration_ms=record.duration_ms,
        session_id=record.session_id,
        source_id=record.source_id,
        is_resolved=record.is_resolved,
        resolution_notes=record.resolution_notes,
        occurrences=record.occurrences,
        created_at=record.created_at,
        updated_at=record.updated_at,
        resolved_at=record.resolved_at,
    )


async def list_known_errors_handler(
    *,
    category: str | None,
    include_resolved: bool,
    limit: int,
    api_deps: ApiDeps,
) -> KnownErrorListResponse:
    records = await api_deps.classifier.list_by_category(
        category=category,
        include_resolved=include_resolved,
        limit=limit,
    )
    return KnownErrorListResponse(items=[known_error_response(record) for record in records])


async def known_error_statistics_handler(*, api_deps: ApiDeps) -> KnownErrorStatisticsResponse:
    stats = await api_deps.classifier.statistics()
    return KnownErrorStatisticsResponse(
        items=[
            KnownErrorStatisticsItem(
                category=item.category,
                total=item.total,
                resolved=item.resolved,
                unresolved=item.unresolved,
                first_seen=item.first_seen,
                last_seen=item.last_seen,
            )
            for item in stats
        ]
    )


async def resolve_known_error_handler(
    *,
    job_handle: str,
    notes: str,
    api_deps: ApiDeps,
) -> KnownErrorResponse | None:
    record = await api_deps.classifier.resolve(job_handle=job_handle, notes=notes)
    return known_error_response(record) if record is not None else None


def categories_handler(*, api_deps: ApiDeps) -> CategoriesResponse:
    return CategoriesResponse(categories=list(api_deps.classifier.categories()))


def recommendation_handler(*, category: str, api_deps: ApiDeps) -> RecommendationResponse:
    recommendation = api_deps.classifier.recommendation(category)
    return RecommendationResponse(
        category=category,
        title=recommendation.title,
        description=recommendation.description,
        actions=list(recommendation.actions),
    )
