from __future__ import annotations

import json
from pathlib import Path

import pytest

from jobledger.const import ENV_SYNC_API_KEY, ENV_SYNC_BASE_URL
from jobledger.sync import LocalSyncStore
from scripts import sync_agent


@pytest.fixture(autouse=True)
def _no_backend_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_SYNC_BASE_URL, raising=False)
    monkeypatch.delenv(ENV_SYNC_API_KEY, raising=False)


def test_once_runs_a_single_local_cycle(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "agent.db"
    code = sync_agent.main(["--db", str(db), "--user-id", "tech-1", "--workspace-id", "ws-1", "--once"])

    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["result"]["ran"] is True
    assert summary["result"]["error"] is None
    assert summary["status"]["local_only"] is True
    assert summary["status"]["workspace_id"] == "ws-1"
    assert LocalSyncStore(db).get_cursor("pull:ws-1") is not None


def test_once_without_session_reports_skip(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = sync_agent.main(["--db", str(tmp_path / "agent.db"), "--once"])
    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["result"]["skipped_reason"] == "no_session"


@pytest.mark.parametrize(
    "argv",
    [
        ["--interval", "1"],
        ["--base-url", "ftp://sync.example", "--api-key", "k"],
        ["--workspace-id", "ws-1"],
    ],
)
def test_bad_arguments_exit_with_code_two(tmp_path: Path, argv: list[str]) -> None:
    assert sync_agent.main(["--db", str(tmp_path / "agent.db"), "--once", *argv]) == 2


def test_build_config_uses_environment_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_SYNC_BASE_URL, "https://sync.example/")
    monkeypatch.setenv(ENV_SYNC_API_KEY, "env-key")
    config = sync_agent.build_config(sync_agent.parse_args([]))
    assert config.base_url == "https://sync.example"
    assert config.api_key == "env-key"
    assert config.configured


def test_once_full_reports_full_trigger(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    argv = ["--db", str(tmp_path / "agent.db"), "--user-id", "tech-1", "--workspace-id", "ws-1", "--once", "--full"]
    assert sync_agent.main(argv) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["result"]["trigger"] == "full"
    assert summary["result"]["ran"] is True
