import os
import subprocess
import sys

import pytest

from outreach.roles import SUPPORTED_ROLES


def _offline_env() -> dict[str, str]:
    env = dict(os.environ)
    for name in ("DATABASE_URL", "RUNNER_API_KEY", "RUNNER_AGENT_ID"):
        env.pop(name, None)
    return env


@pytest.mark.integration
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_role_starts_in_empty_mode_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "outreach.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_offline_env(),
    )
    assert proc.returncode == 0, proc.stderr
    assert "dry-run startup complete" in proc.stdout


@pytest.mark.integration
def test_unknown_role_exits_with_usage_error() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "outreach.main", "--role", "migrator", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 2
    assert "Supported roles" in proc.stderr
