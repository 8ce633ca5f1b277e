import json
import os
import subprocess
import sys
from pathlib import Path

REPO = Path(__file__).resolve().parents[1]


def _run(*args, extra_env=None):
    env = dict(os.environ)
    env.update(extra_env or {})
    return subprocess.run(
        [sys.executable, "Huginn/main.py", *args],
        capture_output=True,
        text=True,
        cwd=REPO,
        env=env,
        timeout=60,
    )


def test_info_runs(isolated_dirs):
    """Smoke test: info prints version and directories as JSON."""
    result = _run("info")
    assert result.returncode == 0
    data = json.loads(result.stdout)
    assert data["name"] == "huginn-agent"
    assert data["data_dir"] == str(isolated_dirs / "data")


def test_status_unenrolled(isolated_dirs):
    """Smoke test: status works offline and reports an unenrolled agent."""
    result = _run("status", extra_env={"HUGINN_BASE_URL": "https://platform.invalid"})
    assert result.returncode == 0
    data = json.loads(result.stdout)
    assert data["enrolled"] is False
    assert data["running"] is False


def test_status_health_verdict(isolated_dirs):
    result = _run("status", "--health", extra_env={"HUGINN_BASE_URL": "https://platform.invalid"})
    assert result.returncode == 0
    assert json.loads(result.stdout)["status"] == "unhealthy"


def test_missing_base_url_is_startup_error(isolated_dirs):
    result = _run("status")
    assert result.returncode == 2
    assert "base_url" in result.stderr


def test_invalid_config_file(isolated_dirs, tmp_path):
    cfg = tmp_path / "agent.yml"
    cfg.write_text("base_url: https://platform.invalid\ncheckin_interval_s: 1\n", encoding="utf-8")
    result = _run("--config", str(cfg), "status")
    assert result.returncode == 2
