from __future__ import annotations

from outreach.domain.errors import DomainInvariantError
from outreach.domain.models import SessionStatus, SourceStatus

# Terminal states accept a repeated write of themselves so that store upserts
# stay idempotent. failed -> completed covers a late successful recovery;
# completed is never downgraded.
SOURCE_TRANSITIONS: dict[str, set[str]] = {
    SourceStatus.PENDING: {SourceStatus.RUNNING},
    SourceStatus.RUNNING: {SourceStatus.COMPLETED, SourceStatus.FAILED},
    SourceStatus.COMPLETED: {SourceStatus.COMPLETED},
    SourceStatus.FAILED: {SourceStatus.FAILED, SourceStatus.COMPLETED},
}

SESSION_TRANSITIONS: dict[str, set[str]] = {
    SessionStatus.ACTIVE: {SessionStatus.ACTIVE, SessionStatus.COMPLETED},
    SessionStatus.COMPLETED: {SessionStatus.COMPLETED},
}


def can_transition_source(from_status: str, to_status: str) -> bool:
    return to_status in SOURCE_TRANSITIONS.get(from_status, set())


def ensure_source_transition(*, source_id: str, from_status: str, to_status: str) -> None:
    if not can_transition_source(from_status, to_status):
        raise DomainInvariantError(
            f"invalid source transition for {source_id}: {from_status} -> {to_status}"
        )


def ensure_session_transition(*, session_id: str, from_status: str, to_status: str) -> None:
    if to_status not in SESSION_TRANSITIONS.get(from_status, set()):
        raise DomainInvariantError(
            f"invalid session transition for {session_id}: {from_status} -> {to_status}"
        )
