from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import httpx

from outreach.domain.errors import (
    RunnerAuthError,
    RunnerError,
    RunnerNotFoundError,
    RunnerRejectedError,
    RunnerTransientError,
)
from outreach.domain.models import DownloadedDocument, JobState, JobStatus, LaunchRequest

DEFAULT_RUNNER_BASE_URL = "https://api.phantombuster.com/api/v2"
API_KEY_HEADER = "X-Phantombuster-Key"

FINISHED_STATES = frozenset({"finished", "completed", "ended", "done", "success", "error", "stopped"})
RUNNING_STATES = frozenset({"running", "starting", "queued", "launching"})

logger = logging.getLogger("runtime")


def job_state_from_runner(value: object) -> JobState:
    state = str(value or "").strip().lower()
    if state in FINISHED_STATES:
        return JobState.FINISHED
    if state in RUNNING_STATES:
        return JobState.RUNNING
    return JobState.UNKNOWN


@dataclass
class HttpJobRunnerClient:
    """Job runner REST client. One request per call, no retries."""

    api_key: str
    agent_id: str
    base_url: str = DEFAULT_RUNNER_BASE_URL
    timeout_seconds: float = 30.0
    transport: httpx.AsyncBaseTransport | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url.rstrip("/"),
            headers={API_KEY_HEADER: self.api_key, "Accept": "application/json"},
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def launch(self, request: LaunchRequest) -> str:
        argument: dict[str, object] = {
            "search": request.template,
            "numberOfResultsPerSearch": request.result_count,
        }
        if request.start_page is not None:
            argument["startPage"] = request.start_page
        if request.page_count is not None:
            argument["numberOfPage"] = request.page_count
        argument.update(request.arguments)

        data = await self._request_json(
            "POST",
            "/agents/launch",
            operation="launch",
            json={"id": self.agent_id, "argument": argument},
        )
        handle = data.get("containerId") if isinstance(data, dict) else None
        if not handle:
            raise RunnerRejectedError("runner launch response has no containerId")
        logger.info(
            "runner job launched",
            extra={"source_id": request.source_id, "job_handle": str(handle)},
        )
        return str(handle)

    async def get_job_status(self, job_handle: str) -> JobStatus:
        data = await self._request_json(
            "GET",
            "/containers/fetch",
            operation="status",
            params={"id": job_handle},
        )
        if not isinstance(data, dict):
            raise RunnerRejectedError("runner status response is not an object")
        payload = data.get("data") if isinstance(data.get("data"), dict) else data
        return JobStatus(
            state=job_state_from_runner(payload.get("status")),
            output=str(payload.get("output") or ""),
            message=_optional_str(payload.get("message") or payload.get("exitMessage")),
            exit_code=_optional_int(payload.get("exitCode")),
            end_type=_optional_str(payload.get("endType")),
            duration_ms=_duration_ms(payload),
            raw=payload,
        )

    async def fetch_structured_result(self, job_handle: str) -> object:
        return await self._request_json(
            "GET",
            "/containers/fetch-result-object",
            operation="fetch-result-object",
            params={"id": job_handle},
        )

    async def fetch_output(self, job_handle: str) -> object:
        return await self._request_json(
            "GET",
            "/containers/fetch-output",
            operation="fetch-output",
            params={"id": job_handle},
        )

    async def download(self, url: str) -> DownloadedDocument:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            try:
                response = await client.get(url, follow_redirects=True)
            except httpx.HTTPError as exc:
                raise RunnerTransientError(f"download failed for {url}: {exc}") from exc
        _raise_for_status(response, operation="download")
        return DownloadedDocument(
            url=url,
            text=response.text,
            content_type=response.headers.get("content-type"),
        )

    async def stop(self, job_handle: str) -> bool:
        await self._request_json(
            "POST",
            "/agents/stop",
            operation="stop",
            json={"id": self.agent_id, "containerId": job_handle},
        )
        return True

    async def _request_json(self, method: str, path: str, *, operation: str, **kwargs: Any) -> Any:
        async with self._client() as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                raise RunnerTransientError(f"runner {operation} timed out: {exc}") from exc
            except httpx.HTTPError as exc:
                raise RunnerTransientError(f"runner {operation} connection failed, no response: {exc}") from exc
        _raise_for_status(response, operation=operation)
        try:
            return response.json()
        except ValueError as exc:
            raise RunnerRejectedError(f"runner {operation} returned malformed json") from exc


def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    body = response.text[:300]
    message = f"runner {operation} responded {status}: {body}"
    error_type: type[RunnerError]
    if status == 401 or status == 403:
        error_type = RunnerAuthError
    elif status == 404 or (status == 400 and "not found" in body.lower()):
        error_type = RunnerNotFoundError
    elif status == 429 or status >= 500:
        error_type = RunnerTransientError
    else:
        error_type = RunnerRejectedError
    raise error_type(message, status_code=status)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None


def _duration_ms(payload: dict[str, Any]) -> int | None:
    started = _optional_int(payload.get("launchedAt") or payload.get("createdAt"))
    ended = _optional_int(payload.get("endedAt"))
    if started is None or ended is None or ended < started:
        return None
    return ended - started
