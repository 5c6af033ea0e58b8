from __future__ import annotations

from dataclasses import dataclass, field

from outreach.domain.errors import RunnerError, RunnerNotFoundError
from outreach.domain.models import DownloadedDocument, JobState, JobStatus, LaunchRequest


@dataclass
class StubJobRunnerClient:
    """Programmable runner used in skeleton mode and in tests.

    Launched jobs report ``default_status`` and ``default_result`` unless a
    handle-specific value was registered.
    """

    statuses: dict[str, JobStatus] = field(default_factory=dict)
    structured_results: dict[str, object] = field(default_factory=dict)
    outputs: dict[str, object] = field(default_factory=dict)
    documents: dict[str, DownloadedDocument] = field(default_factory=dict)
    launch_errors: list[RunnerError] = field(default_factory=list)
    default_status: JobStatus = field(default_factory=lambda: JobStatus(state=JobState.FINISHED))
    default_result: object = None
    launches: list[LaunchRequest] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    calls: list[tuple[str, str]] = field(default_factory=list)
    handle_prefix: str = "job"

    async def launch(self, request: LaunchRequest) -> str:
        self.calls.append(("launch", request.source_id))
        if self.launch_errors:
            raise self.launch_errors.pop(0)
        self.launches.append(request)
        return f"{self.handle_prefix}-{len(self.launches)}"

    async def get_job_status(self, job_handle: str) -> JobStatus:
        self.calls.append(("status", job_handle))
        if job_handle in self.statuses:
            return self.statuses[job_handle]
        if self._is_known(job_handle):
            return self.default_status
        raise RunnerNotFoundError(f"runner status responded 404: job {job_handle} not found", status_code=404)

    async def fetch_structured_result(self, job_handle: str) -> object:
        self.calls.append(("fetch-result-object", job_handle))
        if job_handle in self.structured_results:
            return self.structured_results[job_handle]
        if self._is_known(job_handle):
            return self.default_result
        raise RunnerNotFoundError(f"runner fetch-result-object responded 404: job {job_handle} not found", status_code=404)

    async def fetch_output(self, job_handle: str) -> object:
        self.calls.append(("fetch-output", job_handle))
        if job_handle in self.outputs:
            return self.outputs[job_handle]
        if self._is_known(job_handle):
            return {"output": self.default_status.output}
        raise RunnerNotFoundError(f"runner fetch-output responded 404: job {job_handle} not found", status_code=404)

    async def download(self, url: str) -> DownloadedDocument:
        self.calls.append(("download", url))
        document = self.documents.get(url)
        if document is None:
            raise RunnerNotFoundError(f"runner download responded 404: {url} not found", status_code=404)
        return document

    async def stop(self, job_handle: str) -> bool:
        self.calls.append(("stop", job_handle))
        self.stopped.append(job_handle)
        return True

    def _is_known(self, job_handle: str) -> bool:
        if job_handle in self.statuses or job_handle in self.structured_results or job_handle in self.outputs:
            return True
        prefix = f"{self.handle_prefix}-"
        if not job_handle.startswith(prefix):
            return False
        suffix = job_handle[len(prefix):]
        return suffix.isdigit() and 1 <= int(suffix) <= len(self.launches)
