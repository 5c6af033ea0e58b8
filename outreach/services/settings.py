from __future__ import annotations

from dataclasses import dataclass
import os

from outreach.clients.runner import DEFAULT_RUNNER_BASE_URL


@dataclass(frozen=True)
class EngineSettings:
    database_url: str | None = None
    runner_base_url: str = DEFAULT_RUNNER_BASE_URL
    runner_api_key: str | None = None
    runner_agent_id: str | None = None
    runner_archive_base_url: str | None = None
    runner_timeout_seconds: int = 30
    recovery_tier_timeout_seconds: int = 60
    max_job_lifetime_seconds: int = 7200
    launch_grace_seconds: int = 300
    launch_max_attempts: int = 3
    launch_backoff_base_ms: int = 1000
    launch_backoff_max_ms: int = 10000

    @property
    def uses_http_runner(self) -> bool:
        return bool(self.runner_api_key and self.runner_agent_id)


def engine_settings_from_env() -> EngineSettings:
    return EngineSettings(
        database_url=env_str("DATABASE_URL"),
        runner_base_url=env_str("RUNNER_BASE_URL") or DEFAULT_RUNNER_BASE_URL,
        runner_api_key=env_str("RUNNER_API_KEY"),
        runner_agent_id=env_str("RUNNER_AGENT_ID"),
        runner_archive_base_url=env_str("RUNNER_ARCHIVE_BASE_URL"),
        runner_timeout_seconds=env_int("RUNNER_TIMEOUT_SECONDS", 30),
        recovery_tier_timeout_seconds=env_int("RECOVERY_TIER_TIMEOUT_SECONDS", 60),
        max_job_lifetime_seconds=env_int("MAX_JOB_LIFETIME_SECONDS", 7200),
        launch_grace_seconds=env_int("LAUNCH_GRACE_SECONDS", 300),
        launch_max_attempts=env_int("LAUNCH_MAX_ATTEMPTS", 3),
        launch_backoff_base_ms=env_int("LAUNCH_BACKOFF_BASE_MS", 1000),
        launch_backoff_max_ms=env_int("LAUNCH_BACKOFF_MAX_MS", 10000),
    )


def env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default
