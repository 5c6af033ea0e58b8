from __future__ import annotations

from collections.abc import Sequence
import math

from outreach.domain.errors import ConfigurationError
from outreach.domain.models import RESULTS_PER_PAGE, PlannedSource, SourceSpec

COMPONENT_ID = "domain.distribution.plan"


def plan(sources: Sequence[SourceSpec], quota: int) -> list[PlannedSource]:
    """Split a result quota across prioritized sources.

    When every source carries explicit start page and page count, the hints
    are trusted verbatim and input order is kept. Otherwise each source gets
    round(quota * (1/priority) / sum(1/priority)) results, ordered by ascending
    priority value, with contiguous index ranges.

    Rounding is not corrected: the allocations may sum to a few results more or
    less than the quota (at most one per source). Session accounting carries
    that slack as-is.
    """
    _validate(sources, quota)
    if all(source.has_pagination_hints for source in sources):
        return _plan_from_hints(sources)
    return _plan_weighted(sources, quota)


def _validate(sources: Sequence[SourceSpec], quota: int) -> None:
    if not sources:
        raise ConfigurationError("at least one source is required")
    if isinstance(quota, bool) or not isinstance(quota, int) or quota <= 0:
        raise ConfigurationError(f"quota must be a positive integer, got {quota!r}")

    seen: set[str] = set()
    for source in sources:
        if not source.source_id:
            raise ConfigurationError("source id must not be empty")
        if source.source_id in seen:
            raise ConfigurationError(f"duplicate source id: {source.source_id}")
        seen.add(source.source_id)
        if not source.template:
            raise ConfigurationError(f"source {source.source_id} has an empty template")
        if source.start_page is not None and source.start_page < 1:
            raise ConfigurationError(f"source {source.source_id} start page must be >= 1")
        if source.page_count is not None and source.page_count < 1:
            raise ConfigurationError(f"source {source.source_id} page count must be >= 1")
        if (source.range_start is None) != (source.range_end is None):
            raise ConfigurationError(f"source {source.source_id} range needs both start and end")
        if source.range_start is not None and source.range_end is not None:
            if source.range_start < 0 or source.range_end < source.range_start:
                raise ConfigurationError(f"source {source.source_id} has an invalid range")


def _plan_from_hints(sources: Sequence[SourceSpec]) -> list[PlannedSource]:
    planned: list[PlannedSource] = []
    offset = 0
    for order, source in enumerate(sources, start=1):
        start_page = source.start_page if source.start_page is not None else 1
        page_count = source.page_count if source.page_count is not None else 1
        if source.range_start is not None and source.range_end is not None:
            range_start = source.range_start
            range_end = source.range_end
            allocated = range_end - range_start + 1
        else:
            allocated = page_count * RESULTS_PER_PAGE
            range_start = offset
            range_end = offset + allocated - 1
        offset = range_end + 1
        planned.append(
            PlannedSource(
                source_id=source.source_id,
                template=source.template,
                priority=source.priority,
                allocated=allocated,
                sequence_order=order,
                start_page=start_page,
                page_count=page_count,
                range_start=range_start,
                range_end=range_end,
            )
        )
    return planned


def _plan_weighted(sources: Sequence[SourceSpec], quota: int) -> list[PlannedSource]:
    for source in sources:
        if source.priority <= 0:
            raise ConfigurationError(f"source {source.source_id} priority must be positive")

    # sorted() is stable, so equal priorities keep their input order.
    ordered = sorted(sources, key=lambda source: source.priority)
    total_weight = sum(1 / source.priority for source in ordered)

    planned: list[PlannedSource] = []
    offset = 0
    for order, source in enumerate(ordered, start=1):
        allocated = _round_half_up(quota * (1 / source.priority) / total_weight)
        planned.append(
            PlannedSource(
                source_id=source.source_id,
                template=source.template,
                priority=source.priority,
                allocated=allocated,
                sequence_order=order,
                start_page=offset // RESULTS_PER_PAGE + 1,
                page_count=math.ceil(allocated / RESULTS_PER_PAGE),
                range_start=offset,
                range_end=offset + allocated - 1,
            )
        )
        offset += allocated
    return planned


def _round_half_up(value: float) -> int:
    # Guard against float noise such as 199.99999999999997.
    return math.floor(round(value, 9) + 0.5)
