from __future__ import annotations

from dataclasses import dataclass
import logging

from outreach.domain.contracts import DistributionRepository
from outreach.domain.errors import DomainInvariantError
from outreach.domain.use_cases.sequencer import ExecutionSequencer

logger = logging.getLogger("runtime")


@dataclass
class MonitorLoop:
    """Settles running sources whose jobs have finished, vanished or outlived their lifetime."""

    role: str
    repository: DistributionRepository
    sequencer: ExecutionSequencer

    async def run_once(self) -> int:
        """Returns how many running sources reached a terminal state in this pass."""
        settled_count = 0
        for source in await self.repository.list_running_sources():
            context = {
                "role": self.role,
                "session_id": source.session_id,
                "source_id": source.source_id,
                "job_handle": source.job_handle,
            }
            try:
                settled = await self.sequencer.settle_source(
                    session_id=source.session_id,
                    source_id=source.source_id,
                )
            except DomainInvariantError as exc:
                logger.warning("running source could not be settled", extra={**context, "status": str(exc)})
                continue
            if settled:
                settled_count += 1
                logger.info("running source settled", extra=context)
        return settled_count
