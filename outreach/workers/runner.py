from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from outreach.services.settings import env_int
from outreach.workers.loop import MonitorLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    """Monitor cadence in milliseconds: after settling work, when idle, after an error."""

    poll_interval_ms: int = 200
    idle_backoff_ms: int = 30000
    error_backoff_ms: int = 30000

    def delay_seconds(self, *, settled: int | None) -> float:
        if settled is None:
            return self.error_backoff_ms / 1000
        return (self.poll_interval_ms if settled else self.idle_backoff_ms) / 1000


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    settled_ticks_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    sources_settled_total: int = 0

    def record(self, settled: int | None) -> None:
        self.ticks_total += 1
        if settled is None:
            self.errors_total += 1
        elif settled:
            self.settled_ticks_total += 1
            self.sources_settled_total += settled
        else:
            self.idle_ticks_total += 1


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 30000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 30000),
    )


async def _monitor_tick(*, worker_loop: MonitorLoop, context: dict[str, str], logger: logging.Logger) -> int | None:
    """One pass over running sources; None means the pass raised."""
    try:
        settled = await worker_loop.run_once()
    except Exception:
        logger.exception("monitor tick failed", extra=context)
        return None
    if settled:
        logger.info("monitor tick settled sources", extra={**context, "status": f"settled={settled}"})
    else:
        logger.debug("monitor tick idle", extra=context)
    return settled


async def run_monitor_until_stopped(
    *,
    worker_loop: MonitorLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    context = {"role": role, "service": role, "run_id": run_id}
    state = state if state is not None else WorkerRuntimeState()
    state.started = True
    logger.info("monitor loop started", extra=context)

    while not stop_event.is_set():
        settled = await _monitor_tick(worker_loop=worker_loop, context=context, logger=logger)
        state.record(settled)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.delay_seconds(settled=settled))
        except TimeoutError:
            pass

    state.stopped = True
    logger.info("monitor loop stopped", extra={**context, "status": f"ticks={state.ticks_total}"})
