from __future__ import annotations

import csv
from dataclasses import dataclass, field
import io
import json
from typing import Literal

# Named fields that hold the record list inside a runner result object.
RECORD_LIST_FIELDS = ("results", "data", "profiles", "items", "leads")
# Named fields that point at a result file instead of inline data.
DOWNLOAD_URL_FIELDS = ("jsonUrl", "csvURL", "csvUrl", "resultUrl", "url")
# Wrapper fields some endpoints put around the actual result object.
WRAPPER_FIELDS = ("resultObject", "result")


@dataclass(frozen=True)
class RecordsShape:
    records: list[dict[str, object]]
    kind: Literal["records"] = "records"


@dataclass(frozen=True)
class DownloadUrlShape:
    url: str
    kind: Literal["download_url"] = "download_url"


@dataclass(frozen=True)
class UnknownShape:
    reason: str
    kind: Literal["unknown"] = "unknown"
    detail: dict[str, object] = field(default_factory=dict)


ResultShape = RecordsShape | DownloadUrlShape | UnknownShape


def parse_result_shape(payload: object) -> ResultShape:
    """Normalize any known runner result payload into records, a download URL, or unknown.

    Accepted payloads: a JSON string of any of the shapes below, a bare list of
    record objects, an object carrying a named record list, an object carrying
    a result-file URL, or any of these wrapped in ``resultObject``.
    """
    return _parse(payload, depth=0)


def _parse(payload: object, *, depth: int) -> ResultShape:
    if depth > 3:
        return UnknownShape(reason="result payload is nested too deeply")
    if payload is None:
        return UnknownShape(reason="result payload is empty")

    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")

    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return UnknownShape(reason="result payload is empty")
        if text.startswith(("http://", "https://")):
            return DownloadUrlShape(url=text)
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return UnknownShape(reason="result payload is not valid json", detail={"excerpt": text[:200]})
        return _parse(decoded, depth=depth + 1)

    if isinstance(payload, list):
        return RecordsShape(records=[item for item in payload if isinstance(item, dict)])

    if isinstance(payload, dict):
        for key in WRAPPER_FIELDS:
            if key in payload and payload[key] is not None:
                inner = _parse(payload[key], depth=depth + 1)
                if not isinstance(inner, UnknownShape):
                    return inner
        for key in RECORD_LIST_FIELDS:
            value = payload.get(key)
            if isinstance(value, list):
                return RecordsShape(records=[item for item in value if isinstance(item, dict)])
        for key in DOWNLOAD_URL_FIELDS:
            value = payload.get(key)
            if isinstance(value, str) and value.startswith(("http://", "https://")):
                return DownloadUrlShape(url=value)
        return UnknownShape(reason="result object has no known record field", detail={"keys": sorted(payload)})

    return UnknownShape(reason=f"unsupported result payload type: {type(payload).__name__}")


def parse_download_body(text: str, content_type: str | None = None) -> list[dict[str, object]]:
    """Parse a downloaded result file (JSON or CSV) into records."""
    body = text.strip()
    if not body:
        return []

    is_csv = content_type is not None and "csv" in content_type.lower()
    if not is_csv:
        try:
            decoded = json.loads(body)
        except json.JSONDecodeError:
            is_csv = True
        else:
            shape = parse_result_shape(decoded)
            return shape.records if isinstance(shape, RecordsShape) else []

    reader = csv.DictReader(io.StringIO(body))
    try:
        if not reader.fieldnames or len(reader.fieldnames) < 2:
            return []
        return [
            {key: value for key, value in row.items() if key is not None}
            for row in reader
        ]
    except csv.Error:
        # Oversized fields or stray quoting: unusable body, the next tier takes over.
        return []
