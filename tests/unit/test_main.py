import pytest

from outreach.main import run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "worker-monitor"])
def test_cli_dry_run_succeeds_for_valid_role(role: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RUNNER_API_KEY", raising=False)

    exit_code = run(["--role", role, "--dry-run-startup"])

    assert exit_code == 0
