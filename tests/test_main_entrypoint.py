"""Tests for the ``taskloop`` command-line entrypoint."""

from __future__ import annotations

import argparse
import io
import json
from pathlib import Path

import pytest

import taskloop.__main__ as cli
from taskloop.config import data_dir_for
from taskloop.loop_state import PRD_FILE
from taskloop.process_lock import LOCK_FILE
from taskloop.schemas import StopReason
from taskloop.task_store import TASKS_FILE

pytestmark = pytest.mark.integration


def run_cli(tmp_path: Path, *args: str) -> int:
    return cli.main(["--project", str(tmp_path), *args])


@pytest.fixture
def project(tmp_path: Path) -> Path:
    assert run_cli(tmp_path, "init", "--max-iterations", "4") == 0
    return tmp_path


def test_parse_gate():
    assert cli._parse_gate("tests = pytest -q") == ("tests", "pytest -q")


@pytest.mark.parametrize("value", ["tests", "=pytest", "tests="])
def test_parse_gate_rejects_malformed(value: str):
    with pytest.raises(argparse.ArgumentTypeError):
        cli._parse_gate(value)


def test_no_command_prints_help(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    assert cli.main(["--project", str(tmp_path)]) == 1
    assert "usage:" in capsys.readouterr().out


def test_missing_project(tmp_path: Path):
    assert cli.main(["--project", str(tmp_path / "missing"), "status"]) == 1


def test_init_creates_data_files(capsys: pytest.CaptureFixture[str], project: Path):
    data_dir = data_dir_for(project)
    assert (data_dir / TASKS_FILE).is_file()
    assert (data_dir / "config.yaml").is_file()
    assert (data_dir / "state.json").is_file()
    assert "Task store: created" in capsys.readouterr().out


def test_init_rejects_zero_max_iterations(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    assert run_cli(tmp_path, "init", "--max-iterations", "0") == 1
    assert "invalid option" in capsys.readouterr().err
    assert not (data_dir_for(tmp_path) / "state.json").exists()


def test_status_json(project: Path, capsys: pytest.CaptureFixture[str]):
    capsys.readouterr()
    assert run_cli(project, "status", "--json") == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["state"]["maxIterations"] == 4
    assert payload["lock"] is None


def test_tasks_next_cycles_and_batches(project: Path, capsys: pytest.CaptureFixture[str]):
    capsys.readouterr()
    assert run_cli(project, "tasks") == 0
    assert "Set up project structure" in capsys.readouterr().out
    assert run_cli(project, "next") == 0
    assert "Set up project structure" in capsys.readouterr().out
    assert run_cli(project, "cycles") == 0
    assert "valid" in capsys.readouterr().out
    assert run_cli(project, "batches") == 0
    assert capsys.readouterr().out.count("Batch ") == 3


def test_next_story_without_prd(project: Path):
    assert run_cli(project, "next", "--story") == 1


def test_cycles_exit_code(tmp_path: Path):
    data_dir = data_dir_for(tmp_path)
    data_dir.mkdir(parents=True)
    (data_dir / TASKS_FILE).write_text(
        json.dumps([{"id": "a", "title": "A", "dependencies": ["a"]}]), encoding="utf-8"
    )
    assert run_cli(tmp_path, "cycles") == 1


def test_pause_resume(project: Path, capsys: pytest.CaptureFixture[str]):
    assert run_cli(project, "pause") == 0
    capsys.readouterr()
    run_cli(project, "status")
    assert "Phase:      paused" in capsys.readouterr().out
    assert run_cli(project, "resume") == 0


def test_pause_requires_init(tmp_path: Path):
    assert run_cli(tmp_path, "pause") == 1


def test_unlock_removes_foreign_lock(project: Path):
    lock_path = data_dir_for(project) / LOCK_FILE
    lock_path.write_text(json.dumps({"pid": 999999, "tool": "claude"}), encoding="utf-8")
    assert run_cli(project, "lock") == 0
    assert run_cli(project, "unlock") == 0
    assert not lock_path.exists()


def test_run_requires_command(project: Path):
    assert run_cli(project, "run") == 1


def test_run_uses_command_executor(project: Path, monkeypatch: pytest.MonkeyPatch):
    data_dir = data_dir_for(project)
    (data_dir / PRD_FILE).write_text(
        json.dumps({"userStories": [{"id": "US-001", "title": "Only story", "priority": 1}]}),
        encoding="utf-8",
    )
    captured: dict = {}

    class StubLoop:
        def __init__(self, root, executor, *, config):
            captured["argv"] = executor.argv
            captured["gates"] = executor.gates
            captured["non_interactive"] = config.non_interactive

        def run(self, *, fresh=False):
            return StopReason.ALL_COMPLETE

    monkeypatch.setattr(cli, "AutonomousLoop", StubLoop)
    monkeypatch.setattr(cli.sys, "stdin", io.StringIO())

    code = run_cli(project, "run", "--command", "agent --yes", "--gate", "tests=pytest -q")

    assert code == 0
    assert captured["argv"] == ["agent", "--yes"]
    assert captured["gates"] == {"tests": ["pytest", "-q"]}
    assert captured["non_interactive"] is True


def test_history_and_stats_empty(project: Path, capsys: pytest.CaptureFixture[str]):
    capsys.readouterr()
    assert run_cli(project, "history") == 0
    assert "No iterations recorded." in capsys.readouterr().out
    assert run_cli(project, "stats") == 0
    assert '"total_iterations": 0' in capsys.readouterr().out
