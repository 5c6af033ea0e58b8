from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

IDENTITY_URL_FIELDS = ("profileUrl", "linkedInUrl", "url")
IDENTITY_NAME_FIELDS = ("fullName", "name")
IDENTITY_FIELDS = IDENTITY_URL_FIELDS + IDENTITY_NAME_FIELDS + ("firstName", "lastName")

CONNECTION_DEGREE_FIELD = "connectionDegree"
LEGACY_CONNECTION_DEGREES = {"3+": "3rd+"}


@dataclass(frozen=True)
class PreparedBatch:
    records: list[dict[str, object]]
    all_incomplete: bool
    duplicates_removed: int


def _first_text(record: dict[str, object], fields: Iterable[str]) -> str:
    for key in fields:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def dedupe_key(record: dict[str, object]) -> str:
    return f"{_first_text(record, IDENTITY_URL_FIELDS)}_{_first_text(record, IDENTITY_NAME_FIELDS)}"


def is_incomplete(record: dict[str, object]) -> bool:
    return not _first_text(record, IDENTITY_FIELDS)


def normalize_record(record: dict[str, object]) -> dict[str, object]:
    normalized = dict(record)
    degree = normalized.get(CONNECTION_DEGREE_FIELD)
    if isinstance(degree, str) and degree.strip() in LEGACY_CONNECTION_DEGREES:
        normalized[CONNECTION_DEGREE_FIELD] = LEGACY_CONNECTION_DEGREES[degree.strip()]
    if is_incomplete(normalized):
        normalized["incomplete"] = True
    return normalized


def enrich_record(
    record: dict[str, object],
    *,
    tier: str,
    job_handle: str,
    recovered_at: datetime,
) -> dict[str, object]:
    enriched = dict(record)
    full_name = _first_text(record, IDENTITY_NAME_FIELDS)
    if full_name:
        enriched["profileData"] = {
            "fullName": full_name,
            "firstName": record.get("firstName"),
            "lastName": record.get("lastName"),
            "title": record.get("title") or record.get("job"),
            "location": record.get("location"),
            "connectionDegree": record.get(CONNECTION_DEGREE_FIELD),
            "profileUrl": _first_text(record, IDENTITY_URL_FIELDS) or None,
        }
    company = record.get("company") or record.get("companyName")
    if company:
        enriched["companyData"] = {
            "name": company,
            "url": record.get("companyUrl"),
            "industry": record.get("industry"),
        }
    enriched["recoveryMetadata"] = {
        "tier": tier,
        "job_handle": job_handle,
        "recovered_at": recovered_at.isoformat(),
    }
    return enriched


def prepare_batch(
    raw_records: Iterable[dict[str, object]],
    *,
    tier: str,
    job_handle: str,
    recovered_at: datetime,
) -> PreparedBatch:
    """Normalize, flag, dedupe and enrich a recovered batch, keeping input order.

    Records without any identity field are kept but never collapsed into each
    other, since they share no usable key.
    """
    normalized = [normalize_record(record) for record in raw_records]
    all_incomplete = bool(normalized) and all(record.get("incomplete") for record in normalized)

    seen: set[str] = set()
    unique: list[dict[str, object]] = []
    for record in normalized:
        if not record.get("incomplete"):
            key = dedupe_key(record)
            if key in seen:
                continue
            seen.add(key)
        unique.append(
            enrich_record(record, tier=tier, job_handle=job_handle, recovered_at=recovered_at)
        )

    return PreparedBatch(
        records=unique,
        all_incomplete=all_incomplete,
        duplicates_removed=len(normalized) - len(unique),
    )
